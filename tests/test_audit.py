import threading

from careline.audit import AuditOutbox
from careline.storage import AuditLog, MemoryAuditLog


class BlockingAuditLog(AuditLog):
    def __init__(self):
        self.records = []
        self.entered = threading.Event()
        self.release = threading.Event()

    def record(self, record):
        self.entered.set()
        self.release.wait(5)
        self.records.append(record)


class BrokenAuditLog(AuditLog):
    def record(self, record):
        raise RuntimeError("audit table is gone")


def test_records_reach_the_sink():
    sink = MemoryAuditLog()
    outbox = AuditOutbox(sink)
    assert outbox.record("doc-1", "CREATE_WORKFLOW", "created", {"workflow_id": "w1"})
    outbox.flush()
    assert [r.action_type for r in sink.records] == ["CREATE_WORKFLOW"]
    assert sink.records[0].metadata == {"workflow_id": "w1"}
    outbox.close()


def test_full_outbox_drops_instead_of_blocking():
    sink = BlockingAuditLog()
    outbox = AuditOutbox(sink, maxsize=1)
    outbox.record(None, "A", "first")
    assert sink.entered.wait(5)
    assert outbox.record(None, "B", "second")
    assert not outbox.record(None, "C", "third")
    assert outbox.dropped == 1

    sink.release.set()
    outbox.flush()
    assert [r.action_type for r in sink.records] == ["A", "B"]
    outbox.close()


def test_sink_errors_are_logged(mocker):
    log = mocker.patch("careline.audit.logger")
    outbox = AuditOutbox(BrokenAuditLog())
    assert outbox.record("doc-1", "WORKFLOW_ERROR", "failed")
    outbox.flush()
    log.error.assert_called_once()
    assert "WORKFLOW_ERROR" in log.error.call_args.args[0]
    outbox.close()


def test_close_drains_pending_records():
    sink = MemoryAuditLog()
    outbox = AuditOutbox(sink)
    for i in range(5):
        outbox.record(None, "X", str(i))
    outbox.close()
    assert len(sink.records) == 5
