from __future__ import annotations

from conceptsim.quota import QuotaLedger


def test_commit_is_idempotent_per_request(event_logger) -> None:
    ledger = QuotaLedger(event_logger, limit=100)
    assert ledger.commit("user-1", 1, 30)
    assert not ledger.commit("user-1", 1, 30)
    assert ledger.consumed("user-1") == 30

    types = [e["event_type"] for e in event_logger.read_recent(10)]
    assert types == ["quota_committed", "quota_duplicate_commit"]


def test_negative_units_are_rejected(event_logger) -> None:
    ledger = QuotaLedger(event_logger, limit=100)
    assert not ledger.commit("user-1", 1, -5)
    assert ledger.consumed("user-1") == 0
    # The id was not consumed, so a valid commit for it still lands.
    assert ledger.commit("user-1", 1, 5)


def test_admission_stops_at_limit_but_in_flight_commits_land(event_logger) -> None:
    ledger = QuotaLedger(event_logger, limit=50)
    assert ledger.try_reserve("user-1")
    ledger.commit("user-1", 1, 40)
    assert ledger.try_reserve("user-1")
    ledger.commit("user-1", 2, 40)

    assert not ledger.try_reserve("user-1")
    assert ledger.consumed("user-1") == 80
    assert ledger.remaining("user-1") == 0

    # A request admitted before the limit was crossed still commits.
    assert ledger.commit("user-1", 3, 10)
    assert ledger.consumed("user-1") == 90


def test_identities_are_tracked_separately(event_logger) -> None:
    ledger = QuotaLedger(event_logger, limit=10)
    ledger.commit("alice", 1, 10)
    assert not ledger.try_reserve("alice")
    assert ledger.try_reserve("bob")
    assert ledger.remaining("bob") == 10


def test_consumed_never_decreases_across_mixed_outcomes(event_logger) -> None:
    ledger = QuotaLedger(event_logger, limit=1000)
    history = []
    for request_id, units in enumerate([12, 0, 7, 0, 0, 31], start=1):
        ledger.commit("user-1", request_id, units)
        history.append(ledger.consumed("user-1"))
    assert history == sorted(history)
    assert history[-1] == 50


def test_estimate_rounds_up(event_logger) -> None:
    ledger = QuotaLedger(event_logger, chars_per_unit=4)
    assert ledger.estimate_units("abc", "") == 1
    assert ledger.estimate_units("abcd", "efgh") == 2
    assert ledger.estimate_units("", "") == 0


def test_snapshot_reports_each_identity(event_logger) -> None:
    ledger = QuotaLedger(event_logger, limit=100)
    ledger.commit("user-1", 1, 25)
    ledger.commit("user-1", 2, 5)
    snap = ledger.snapshot()
    assert snap == {"user-1": {"units_consumed": 30, "remaining": 70, "limit": 100, "requests": 2}}
