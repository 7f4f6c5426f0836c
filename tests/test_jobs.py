import signal

from jobs import StopFlag, run_outbox, run_payouts, run_release
from transfers import SandboxTransferClient


def test_stop_flag():
    stop = StopFlag()
    assert stop() is False
    stop.stop(signal.SIGTERM, None)
    assert stop() is True


def test_jobs_on_empty_ledger(db, settings):
    assert run_release(db) == {"released": 0, "entry_ids": []}
    assert run_payouts(db, settings, SandboxTransferClient()) == {"payouts": 0, "sent": 0, "failed": 0}
    assert run_outbox(db, settings) == {"sent": 0, "failed": 0, "retry": 0}
