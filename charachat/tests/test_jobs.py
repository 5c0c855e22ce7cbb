"""
Periodic jobs and their RQ enqueue helpers.

Jobs open their own sessions, so setup commits before each job runs.
"""
import json
from datetime import datetime, timedelta, timezone
from unittest.mock import Mock

from charachat.features.credits.ledger import create_transaction, get_current_balance, get_snapshot
from charachat.features.plans.cycle import grant_initial_credits
from charachat.features.subscriptions.service import activate_subscription
from charachat.features.usage.service import get_usage_log, log_service_usage
from charachat.models.credits import TransactionKind
from charachat.models.usage import ServiceKind, UsageMetrics
from charachat.workers import jobs, queue


def test_process_pending_usage_job(db, now):
    create_transaction(db, "acct_job", TransactionKind.GRANT_INITIAL, 50, now=now)
    log = log_service_usage(db, "acct_job", ServiceKind.IMAGE_GENERATION, UsageMetrics(), now=now)

    assert jobs.process_pending_usage() == {"processed": 1}

    db.expire_all()
    assert get_usage_log(db, log.id).credits_consumed == 10
    assert get_current_balance(db, "acct_job") == 40


def test_grant_due_monthly_credits_job(db, now):
    activate_subscription(db, "acct_due", "plus", "sub_due", next_billing_at=now + timedelta(days=31), now=now)
    grant_initial_credits(db, "acct_free", now=now)

    assert jobs.grant_due_monthly_credits(now=now + timedelta(days=10)) == {"granted": 0, "skipped": 0, "failed": 0}
    assert jobs.grant_due_monthly_credits(now=now + timedelta(days=30)) == {"granted": 1, "skipped": 0, "failed": 0}

    db.expire_all()
    assert get_current_balance(db, "acct_due", now=now + timedelta(days=30)) == 200
    assert get_current_balance(db, "acct_free", now=now + timedelta(days=30)) == 50


def test_grant_job_counts_failures(db, now, monkeypatch):
    activate_subscription(db, "acct_boom", "plus", "sub_boom", next_billing_at=now + timedelta(days=31), now=now)

    def failing_grant(*args, **kwargs):
        raise RuntimeError("database went away")

    monkeypatch.setattr(jobs, "grant_monthly_credits", failing_grant)

    assert jobs.grant_due_monthly_credits(now=now + timedelta(days=30)) == {"granted": 0, "skipped": 0, "failed": 1}


def test_monthly_snapshot_job(db, now):
    create_transaction(db, "acct_snap", TransactionKind.GRANT_INITIAL, 80, now=now)
    april = datetime(2025, 4, 1, 0, 5, tzinfo=timezone.utc)

    first = jobs.run_monthly_snapshots(now=now)
    second = jobs.run_monthly_snapshots(now=april)

    assert first == {"snapshots_created": 1, "snapshots_closed": 0, "failed": 0}
    assert second == {"snapshots_created": 1, "snapshots_closed": 1, "failed": 0}

    db.expire_all()
    march = get_snapshot(db, "acct_snap", datetime(2025, 3, 1, tzinfo=timezone.utc))
    assert march.starting_balance == 0
    assert march.credits_granted == 80
    assert march.ending_balance == 80
    assert get_snapshot(db, "acct_snap", datetime(2025, 4, 1, tzinfo=timezone.utc)).starting_balance == 80
    assert get_current_balance(db, "acct_snap", now=april) == 80


def test_renew_free_cycles_job(db, now):
    grant_initial_credits(db, "acct_cycle", now=now)
    assert jobs.renew_free_cycles(now=datetime(2025, 4, 2, tzinfo=timezone.utc)) == {"renewed": 1}


def test_reconcile_job_reports_clean_ledgers(db, now):
    create_transaction(db, "acct_rec", TransactionKind.GRANT_INITIAL, 10, now=now)
    report = jobs.reconcile_ledgers()
    assert report["accounts_checked"] == 1
    assert report["mismatches"] == []


def test_job_cli_prints_result(db, monkeypatch, capsys):
    monkeypatch.setattr("sys.argv", ["jobs", "renew-free-cycles"])

    assert jobs.main() == 0
    assert json.loads(capsys.readouterr().out) == {"renewed": 0}


def test_enqueue_helpers_use_credit_jobs():
    mock_queue = Mock()
    mock_queue.enqueue.return_value = Mock(id="job-1")

    assert queue.enqueue_process_usage(25, queue=mock_queue) == "job-1"
    mock_queue.enqueue.assert_called_with(jobs.process_pending_usage, 25, job_timeout="10m", result_ttl=3600)

    queue.enqueue_monthly_snapshots(queue=mock_queue)
    assert mock_queue.enqueue.call_args.args == (jobs.run_monthly_snapshots,)

    queue.enqueue_monthly_grants(queue=mock_queue)
    assert mock_queue.enqueue.call_args.args == (jobs.grant_due_monthly_credits,)

    queue.enqueue_free_cycle_renewal(queue=mock_queue)
    assert mock_queue.enqueue.call_args.args == (jobs.renew_free_cycles,)

    queue.enqueue_reconciliation(queue=mock_queue)
    assert mock_queue.enqueue.call_args.args == (jobs.reconcile_ledgers,)
