# carwatch/errors.py
"""Exceptions raised by the crowd-refresh engine."""


class CarwatchError(Exception):
    pass


class VehicleNotFoundError(CarwatchError):
    def __init__(self, vehicle_id):
        super().__init__(f"Vehicle {vehicle_id} not found")
        self.vehicle_id = vehicle_id


class ConcurrentUpdateError(CarwatchError):
    """Another writer changed the vehicle underneath us; retry with a fresh read."""


class MergeError(CarwatchError):
    """A merge was rejected or rolled back. Safe to retry."""


class DeliveryError(CarwatchError):
    pass
