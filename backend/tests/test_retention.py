from datetime import date, datetime, timezone

import pytest

from app.services.retention import cancel_deletion, compute_urgency, extend_retention, list_pending_deletions
from tests.testkit import make_church, make_subscription, make_tier

TODAY = date(2026, 3, 10)


@pytest.mark.parametrize(
    "days, urgency",
    [(-2, "OVERDUE"), (0, "OVERDUE"), (1, "CRITICAL"), (3, "CRITICAL"), (4, "HIGH"), (7, "HIGH"), (8, "MEDIUM"), (14, "MEDIUM"), (15, "LOW")],
)
def test_urgency_bands(days, urgency):
    assert compute_urgency(days) == urgency


def test_pending_deletions_are_sorted_and_skip_canceled(db):
    tier = make_tier(db, "PLUS", monthly="30.00")
    later = make_church(db, name="Later")
    sooner = make_church(db, name="Sooner")
    spared = make_church(db, name="Spared")
    make_subscription(db, later, tier, status="SUSPENDED", data_retention_end_date=date(2026, 4, 1))
    make_subscription(db, sooner, tier, status="SUSPENDED", data_retention_end_date=date(2026, 3, 12))
    make_subscription(db, spared, tier, status="SUSPENDED", data_retention_end_date=date(2026, 3, 11))
    cancel_deletion(db, church_id=spared.id, actor="platform-admin")
    db.commit()

    rows = list_pending_deletions(db, today=TODAY)

    assert [r.church_name for r in rows] == ["Sooner", "Later"]
    assert rows[0].days_until_deletion == 2
    assert rows[0].urgency == "CRITICAL"
    assert rows[0].days_until_warning == -5
    assert rows[1].days_until_deletion == 22
    assert rows[1].urgency == "LOW"


def test_extension_past_warning_window_clears_sent_warning(db):
    tier = make_tier(db, "PLUS", monthly="30.00")
    church = make_church(db)
    sub = make_subscription(db, church, tier, status="SUSPENDED", data_retention_end_date=date(2026, 3, 14))
    sub.deletion_warning_sent_at = datetime(2026, 3, 8, tzinfo=timezone.utc)

    extend_retention(db, church_id=church.id, extension_days=30, note="Awaiting council", actor="platform-admin", today=TODAY)

    assert sub.data_retention_end_date == date(2026, 4, 13)
    assert sub.deletion_warning_sent_at is None


def test_non_positive_extension_is_rejected(db):
    with pytest.raises(ValueError):
        extend_retention(db, church_id=make_church(db).id, extension_days=0, note=None)
