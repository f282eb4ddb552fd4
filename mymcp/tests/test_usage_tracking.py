"""
Tests for monthly usage counters and request logs.
"""
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timedelta, timezone

import pytest

from mymcp.core.database import init_engine, create_all_tables
from mymcp.core.errors import ConfigurationError, ValidationError
from mymcp.core.metrics import usage_increments_total
from mymcp.features.plans.service import seed_plans
from mymcp.features.subscriptions.service import get_active_subscription, update_subscription_status
from mymcp.features.usage.service import (
    get_current_usage,
    get_monthly_request_count,
    get_or_create_usage,
    list_request_logs,
    track_request,
    track_server_creation,
)
from mymcp.features.users.service import get_or_create_user
from mymcp.models.usage import UserUsage


def test_increment_is_monotonic_in_memory():
    start = datetime(2025, 3, 1, tzinfo=timezone.utc)
    usage = UserUsage(
        usage_id="u1",
        user_id="user-1",
        subscription_id="sub-1",
        year=2025,
        month=3,
        request_count=0,
        last_updated=start,
    )
    stamps = []
    for i in range(5):
        usage.increment_request_count(start + timedelta(minutes=i))
        stamps.append(usage.last_updated)

    assert usage.request_count == 5
    assert stamps == sorted(stamps)

    # An older clock reading never moves last_updated backwards
    usage.increment_request_count(start - timedelta(days=1))
    assert usage.request_count == 6
    assert usage.last_updated == stamps[-1]

    with pytest.raises(ValidationError):
        usage.increment_request_count(start, weight=0)
    assert usage.request_count == 6


def test_has_exceeded_limit():
    usage = UserUsage(
        usage_id="u1", user_id="x", subscription_id="s", year=2025, month=3,
        request_count=100, last_updated=datetime(2025, 3, 1, tzinfo=timezone.utc),
    )
    assert usage.has_exceeded_limit(100) is True
    assert usage.has_exceeded_limit(101) is False


def test_usage_row_created_lazily(free_user, now):
    assert get_current_usage(free_user.user_id, now) is None
    assert get_monthly_request_count(free_user.user_id, now) == 0

    usage = get_or_create_usage(free_user.user_id, now)
    assert usage.request_count == 0
    assert (usage.year, usage.month) == (2025, 3)
    sub = get_active_subscription(free_user.user_id, now)
    assert usage.subscription_id == sub.subscription_id

    again = get_or_create_usage(free_user.user_id, now)
    assert again.usage_id == usage.usage_id


def test_no_active_subscription_is_configuration_error(free_user, now):
    sub = get_active_subscription(free_user.user_id, now)
    update_subscription_status(sub.subscription_id, "suspended", now=now)
    with pytest.raises(ConfigurationError):
        track_request(free_user.user_id, None, "/mcp/call", "POST", now=now)


def test_sequential_increments(free_user, now):
    for i in range(7):
        usage = track_request(free_user.user_id, None, "/mcp/call", "post", now=now + timedelta(seconds=i))
    assert usage.request_count == 7
    assert usage.last_updated == now + timedelta(seconds=6)
    assert get_monthly_request_count(free_user.user_id, now) == 7
    assert usage_increments_total.value({"endpoint": "/mcp/call"}) == 7


def test_weighted_request(free_user, now):
    usage = track_request(free_user.user_id, None, "/mcp/batch", "POST", weight=5, now=now)
    assert usage.request_count == 5
    with pytest.raises(ValidationError) as exc_info:
        track_request(free_user.user_id, None, "/mcp/batch", "POST", weight=0, now=now)
    assert exc_info.value.status_code == 400
    assert get_monthly_request_count(free_user.user_id, now) == 5


def test_late_arriving_older_request_keeps_last_updated(free_user, now):
    later = now + timedelta(seconds=30)
    track_request(free_user.user_id, None, "/mcp/call", "POST", now=later)
    usage = track_request(free_user.user_id, None, "/mcp/call", "POST", now=now + timedelta(seconds=5))

    assert usage.request_count == 2
    assert usage.last_updated == later
    assert get_current_usage(free_user.user_id, now).last_updated == later


def test_server_creation_log_entry(free_user, now):
    track_server_creation(free_user.user_id, "server-1", now=now)
    logs = list_request_logs(free_user.user_id, 2025, 3)
    assert len(logs) == 1
    entry = logs[0]
    assert entry.endpoint == "/servers"
    assert entry.method == "POST"
    assert entry.weight == 1
    assert entry.server_instance_id == "server-1"
    assert entry.request_timestamp == now


def test_new_month_starts_new_counter(free_user, now):
    track_request(free_user.user_id, None, "/mcp/call", "GET", now=now)
    next_month = datetime(2025, 4, 2, tzinfo=timezone.utc)
    usage = track_request(free_user.user_id, None, "/mcp/call", "GET", now=next_month)
    assert (usage.year, usage.month) == (2025, 4)
    assert usage.request_count == 1
    assert get_monthly_request_count(free_user.user_id, now) == 1
    assert len(list_request_logs(free_user.user_id, 2025, 4)) == 1
    assert len(list_request_logs(free_user.user_id)) == 2


def test_concurrent_increments_are_not_lost(tmp_path):
    """Parallel billable calls for one user and month must all be counted."""
    init_engine(f"sqlite:///{tmp_path / 'usage.db'}")
    create_all_tables()
    seed_plans()
    now = datetime(2025, 3, 15, 12, 0, tzinfo=timezone.utc)
    user = get_or_create_user("user_concurrent", email="c@example.com", now=now)

    # First call creates the row; the rest contend on the counter
    track_request(user.user_id, None, "/mcp/call", "POST", now=now)

    def hit(i):
        track_request(user.user_id, None, "/mcp/call", "POST", now=now + timedelta(milliseconds=i))

    with ThreadPoolExecutor(max_workers=8) as pool:
        list(pool.map(hit, range(40)))

    assert get_monthly_request_count(user.user_id, now) == 41
    assert len(list_request_logs(user.user_id, 2025, 3)) == 41
