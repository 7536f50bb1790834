# tests/test_notifications.py
from datetime import datetime, timezone
from types import SimpleNamespace

from helpers import snapshot, watch_entry
from carwatch.changes import PRICE_CHANGE, STATUS_CHANGE, ChangeEvent
from carwatch.models import Notification, NotificationType
from carwatch.notifications import classify, is_relist, render


def _notifications(database, user_id=None):
    with database.session_scope() as db:
        q = db.query(Notification)
        if user_id:
            q = q.filter(Notification.user_id == user_id)
        return q.order_by(Notification.created_at).all()

def _entry(**prefs):
    values = dict(
        notify_price_drop=True, notify_price_rise=False, notify_status_change=True,
        notify_relist=True, price_drop_threshold=None, target_price=None,
    )
    values.update(prefs)
    return SimpleNamespace(**values)

def _price_event(previous, new):
    amount = new - previous
    return ChangeEvent(PRICE_CHANGE, "c1", "v1", previous, new, datetime.now(timezone.utc),
                       change_amount=amount, change_percent=amount * 100 / previous)

def _status_event(previous, new):
    return ChangeEvent(STATUS_CHANGE, "c2", "v1", previous, new, datetime.now(timezone.utc))


def test_classify_price_preferences():
    drop = _price_event(20000, 18000)
    assert classify(_entry(), drop) is NotificationType.PRICE_DROP
    assert classify(_entry(notify_price_drop=False), drop) is None
    assert classify(_entry(price_drop_threshold=500), drop) is NotificationType.PRICE_DROP
    assert classify(_entry(price_drop_threshold=5000), drop) is None
    assert classify(_entry(target_price=19000), drop) is NotificationType.TARGET_PRICE_HIT
    assert classify(_entry(), _price_event(18000, 20000)) is None
    assert classify(_entry(notify_price_rise=True), _price_event(18000, 20000)) is NotificationType.PRICE_RISE

def test_classify_status_preferences():
    assert classify(_entry(), _status_event("active", "pending")) is NotificationType.STATUS_CHANGE
    assert classify(_entry(), _status_event("sold", "active")) is NotificationType.RELIST_DETECTED
    assert classify(_entry(notify_relist=False), _status_event("removed", "active")) is None
    assert classify(_entry(notify_status_change=False), _status_event("active", "sold")) is None

def test_is_relist():
    assert is_relist("active", "relisted")
    assert is_relist("removed", "active")
    assert not is_relist("pending", "active")

def test_render_price_drop():
    vehicle = SimpleNamespace(display_name="2020 Honda Accord")
    title, body = render(NotificationType.PRICE_DROP, vehicle, _price_event(20000, 18000))
    assert title == "Price Drop: 2020 Honda Accord"
    assert body == "Price dropped from $200 to $180 (10.0% off)"
    title, body = render(NotificationType.STATUS_CHANGE, vehicle, _status_event("active", "sold"))
    assert title == "Status Update: 2020 Honda Accord"
    assert body == "Status changed from active to sold"


def test_watcher_preferences_filter_fan_out(pipeline, database, make_user, watch):
    for uid in ("submitter", "no-drops", "small-threshold", "big-threshold"):
        make_user(uid)
    vid = pipeline.process_snapshot("submitter", snapshot(price=20000)).vehicle.id
    watch("no-drops", vid, notify_price_drop=False)
    watch("small-threshold", vid, price_drop_threshold=500)
    watch("big-threshold", vid, price_drop_threshold=5000)

    pipeline.process_snapshot("submitter", snapshot(price=18000))

    notified = _notifications(database)
    assert [n.user_id for n in notified] == ["small-threshold"]
    n = notified[0]
    assert n.type == "price_drop"
    assert n.channel == "in_app"
    assert n.sent_at is not None
    assert n.price_change_id is not None
    assert watch_entry(database, "small-threshold", vid).last_notified_at is not None
    assert watch_entry(database, "big-threshold", vid).last_notified_at is None

def test_target_price_hit(pipeline, database, make_user, watch):
    make_user("buyer")
    vid = pipeline.process_snapshot("seller-scout", snapshot(price=20000)).vehicle.id
    watch("buyer", vid, target_price=19000)
    pipeline.process_snapshot("seller-scout", snapshot(price=18000))
    [n] = _notifications(database, "buyer")
    assert n.type == "target_price_hit"
    assert n.title == "Target Price Hit: 2020 Honda Accord"

def test_triggering_user_is_not_notified(pipeline, database, make_user, watch):
    make_user("alice")
    make_user("bob")
    vid = pipeline.process_snapshot("alice", snapshot(price=20000)).vehicle.id
    watch("alice", vid)
    watch("bob", vid)
    pipeline.process_snapshot("alice", snapshot(price=18000))
    assert [n.user_id for n in _notifications(database)] == ["bob"]

def test_email_watchers_get_mail(ctx, pipeline, database, make_user, watch):
    make_user("mailer", email="mailer@example.com")
    vid = pipeline.process_snapshot("scout", snapshot(price=20000)).vehicle.id
    watch("mailer", vid)
    pipeline.process_snapshot("scout", snapshot(price=18000))

    [n] = _notifications(database, "mailer")
    assert n.channel == "email"
    assert n.sent_at is not None
    [(to, subject, body)] = ctx.email_sender.sent
    assert to == "mailer@example.com"
    assert subject == "Price Drop: 2020 Honda Accord"
    assert "http://localhost:3000/watchlist" in body

def test_failed_email_leaves_notification_unsent(ctx, pipeline, database, make_user, watch):
    ctx.email_sender.fail = True
    make_user("mailer", email="mailer@example.com")
    vid = pipeline.process_snapshot("scout", snapshot(price=20000)).vehicle.id
    watch("mailer", vid)
    result = pipeline.process_snapshot("scout", snapshot(price=18000))

    assert len(result.events) == 1
    [n] = _notifications(database, "mailer")
    assert n.sent_at is None
    assert watch_entry(database, "mailer", vid).last_notified_at is not None

def test_opted_out_of_email_stays_in_app(ctx, pipeline, database, make_user, watch):
    make_user("quiet", email="quiet@example.com", email_notifications=False)
    vid = pipeline.process_snapshot("scout", snapshot(price=20000)).vehicle.id
    watch("quiet", vid)
    pipeline.process_snapshot("scout", snapshot(price=18000))
    [n] = _notifications(database, "quiet")
    assert n.channel == "in_app"
    assert ctx.email_sender.sent == []

def test_relist_notification(pipeline, database, make_user, watch):
    make_user("fan")
    vid = pipeline.process_snapshot("scout", snapshot()).vehicle.id
    watch("fan", vid)
    pipeline.process_snapshot("scout", snapshot(status="sold"))
    pipeline.process_snapshot("scout", snapshot(status="active"))
    types = [n.type for n in _notifications(database, "fan")]
    assert sorted(types) == ["relist_detected", "status_change"]
