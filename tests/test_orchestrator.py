"""Tests for the orchestrator: submission, worker execution, recovery, cancellation and removal."""

import os
import sqlite3

import pytest

from conftest import DAMAGED_OUTPUT, FAKE_PID, create_test_file
from core.catalog import ItemMode, ItemStatus, ProtectedItem
from core.errors import ErrorKind, Par2ProtectError
from core.operation_queue import OperationStatus, OperationType
from core.process_runner import ProcessResult, RunningProcess


@pytest.fixture
def orchestrator(engine):
    return engine.orchestrator


def protect_now(engine, path, redundancy=None, force=False, file_types=None):
    """Submit a protect and drain the queue in this thread."""
    operation = engine.orchestrator.submit_protect(path, redundancy, force, file_types=file_types)
    engine.orchestrator.run_until_idle()
    return engine.queue.get(operation.id)


def verify_now(engine, path, **kwargs):
    operations, errors = engine.orchestrator.submit_verify(path, force=True, **kwargs)
    assert errors == []
    engine.orchestrator.run_until_idle()
    return engine.queue.get(operations[0].id)


# ============================================================================
# Protect
# ============================================================================

class TestProtect:

    def test_protect_file(self, engine, fake_runner, data_dir):
        path = create_test_file(os.path.join(data_dir, "a.txt"), size_bytes=500)
        operation = protect_now(engine, path)

        assert operation.status == OperationStatus.COMPLETED
        assert operation.result["status"] == "PROTECTED"
        parity_dir = os.path.join(data_dir, ".parity")
        assert os.path.isfile(os.path.join(parity_dir, "a.txt.par2"))

        call = fake_runner.calls[0]
        assert call["command"] == [
            "par2", "create", "-r10", f"-B{data_dir}",
            f"-a{parity_dir}/a.txt.par2", "--", path,
        ]
        assert call["cwd"] == parity_dir
        assert call["timeout"] == engine.config.queue.max_execution_time

        item = engine.catalog.get(path)
        assert item.mode == ItemMode.FILE
        assert item.last_status == ItemStatus.PROTECTED
        assert item.size == 500
        assert item.par2_size > 0
        assert item.parity_location == parity_dir
        assert len(engine.metadata.get(path)) == 1

    def test_protect_directory_excludes_parity(self, engine, fake_runner, data_dir):
        create_test_file(os.path.join(data_dir, "a.txt"))
        create_test_file(os.path.join(data_dir, "sub", "b.txt"))
        operation = protect_now(engine, data_dir, redundancy=25)

        assert operation.status == OperationStatus.COMPLETED
        assert operation.result["files"] == 2
        command = fake_runner.calls[0]["command"]
        assert "-r25" in command
        assert command[command.index("--") + 1:] == [
            os.path.join(data_dir, "a.txt"), os.path.join(data_dir, "sub", "b.txt"),
        ]
        item = engine.catalog.get(data_dir)
        assert item.mode == ItemMode.DIRECTORY
        assert item.parity_location == os.path.join(data_dir, ".parity")

    def test_resource_limits_wrap_command(self, engine, fake_runner, data_dir):
        engine.config.resource_limits.io_priority = "low"
        engine.config.resource_limits.max_cpu_usage = 2
        path = create_test_file(os.path.join(data_dir, "a.txt"))
        protect_now(engine, path)
        command = fake_runner.calls[0]["command"]
        assert command[:7] == ["ionice", "-c", "2", "-n", "7", "par2", "create"]
        assert command[7] == "-t2"

    def test_unchanged_item_is_skipped(self, engine, fake_runner, data_dir):
        path = create_test_file(os.path.join(data_dir, "a.txt"))
        protect_now(engine, path)
        again = engine.orchestrator.submit_protect(path)

        assert again.status == OperationStatus.SKIPPED
        assert again.result["reason"] == "Already protected and unchanged"
        assert len(fake_runner.calls) == 1

    def test_changed_item_is_reprotected(self, engine, fake_runner, data_dir):
        path = create_test_file(os.path.join(data_dir, "a.txt"), content="short")
        protect_now(engine, path)
        create_test_file(path, content="considerably longer content")
        operation = protect_now(engine, path)

        assert operation.status == OperationStatus.COMPLETED
        assert len(fake_runner.calls) == 2
        assert engine.catalog.get(path).size == len("considerably longer content")

    def test_force_reprotects_unchanged_item(self, engine, fake_runner, data_dir):
        path = create_test_file(os.path.join(data_dir, "a.txt"))
        protect_now(engine, path)
        operation = protect_now(engine, path, force=True)
        assert operation.status == OperationStatus.COMPLETED
        assert len(fake_runner.calls) == 2

    def test_reprotect_builds_new_set_before_replacing(self, engine, fake_runner, data_dir):
        path = create_test_file(os.path.join(data_dir, "a.txt"))
        protect_now(engine, path)
        parity_dir = os.path.join(data_dir, ".parity")

        def _create_single_file(command, cwd):
            archive = next(arg[2:] for arg in command if arg.startswith("-a"))
            with open(archive, "wb") as f:
                f.write(b"NEWSET")
            return ProcessResult(exit_code=0, stdout="Done", pid=FAKE_PID)

        fake_runner.responses["create"] = _create_single_file
        operation = protect_now(engine, path, force=True)

        assert operation.status == OperationStatus.COMPLETED
        staging = os.path.join(parity_dir, f".staging_{operation.id}")
        assert fake_runner.calls[1]["cwd"] == staging
        assert f"-a{staging}/a.txt.par2" in fake_runner.calls[1]["command"]
        assert os.listdir(parity_dir) == ["a.txt.par2"]
        with open(os.path.join(parity_dir, "a.txt.par2"), "rb") as f:
            assert f.read() == b"NEWSET"

    def test_failed_reprotect_keeps_existing_parity(self, engine, fake_runner, data_dir):
        path = create_test_file(os.path.join(data_dir, "a.txt"))
        protect_now(engine, path)
        parity_dir = os.path.join(data_dir, ".parity")
        original = sorted(os.listdir(parity_dir))

        fake_runner.responses["create"] = ProcessResult(exit_code=2, stderr="Out of disk space", pid=FAKE_PID)
        operation = protect_now(engine, path, force=True)

        assert operation.status == OperationStatus.FAILED
        assert sorted(os.listdir(parity_dir)) == original
        item = engine.catalog.get(path)
        assert item.last_status == ItemStatus.PROTECTED
        assert engine.orchestrator.recover()["missing_items"] == 0

    def test_file_colliding_with_protected_directory_is_refused(self, engine, data_dir):
        directory = os.path.join(data_dir, "x")
        inner = create_test_file(os.path.join(directory, "x"))
        protect_now(engine, directory)

        with pytest.raises(Par2ProtectError) as exc_info:
            engine.orchestrator.submit_protect(inner)
        assert exc_info.value.kind == ErrorKind.VALIDATION
        assert exc_info.value.context["owner"] == directory
        assert engine.catalog.get(inner) is None
        assert os.path.isfile(os.path.join(directory, ".parity", "x.par2"))

    def test_directory_colliding_with_protected_file_is_refused(self, engine, data_dir):
        directory = os.path.join(data_dir, "x")
        inner = create_test_file(os.path.join(directory, "x"))
        protect_now(engine, inner)

        with pytest.raises(Par2ProtectError) as exc_info:
            engine.orchestrator.submit_protect(directory)
        assert exc_info.value.context["owner"] == inner
        assert engine.catalog.get(directory) is None

    def test_colliding_protects_queued_together(self, engine, data_dir):
        directory = os.path.join(data_dir, "x")
        inner = create_test_file(os.path.join(directory, "x"))
        first = engine.orchestrator.submit_protect(directory)
        second = engine.orchestrator.submit_protect(inner)
        engine.orchestrator.run_until_idle()

        assert engine.queue.get(first.id).status == OperationStatus.COMPLETED
        refused = engine.queue.get(second.id)
        assert refused.status == OperationStatus.FAILED
        assert refused.result["kind"] == ErrorKind.VALIDATION.value
        assert engine.catalog.get(inner) is None
        assert engine.catalog.get(directory).last_status == ItemStatus.PROTECTED

    def test_file_types_filter_directory(self, engine, fake_runner, data_dir):
        movie = create_test_file(os.path.join(data_dir, "film.MKV"))
        create_test_file(os.path.join(data_dir, "notes.txt"))
        clip = create_test_file(os.path.join(data_dir, "sub", "clip.mp4"))
        operation = protect_now(engine, data_dir, file_types=[".mkv", "MP4", "mkv"])

        assert operation.status == OperationStatus.COMPLETED
        assert operation.result["files"] == 2
        command = fake_runner.calls[0]["command"]
        assert command[command.index("--") + 1:] == [movie, clip]
        item = engine.catalog.get(data_dir)
        assert item.file_types == ["mkv", "mp4"]
        assert item.parity_location == os.path.join(data_dir, ".parity")
        assert sorted(m.file_path for m in engine.metadata.get(data_dir)) == sorted([movie, clip])

        verified = verify_now(engine, data_dir)
        assert verified.result["file_types"] == ["mkv", "mp4"]

    def test_file_types_change_triggers_reprotect(self, engine, fake_runner, data_dir):
        create_test_file(os.path.join(data_dir, "film.mkv"))
        create_test_file(os.path.join(data_dir, "notes.txt"))
        protect_now(engine, data_dir, file_types=["mkv"])

        same = engine.orchestrator.submit_protect(data_dir, file_types=["MKV"])
        assert same.status == OperationStatus.SKIPPED

        operation = protect_now(engine, data_dir)
        assert operation.status == OperationStatus.COMPLETED
        assert operation.result["files"] == 2
        assert engine.catalog.get(data_dir).file_types is None

    @pytest.mark.parametrize("file_types", [[], [""], ["a/b"], [3]])
    def test_invalid_file_types(self, orchestrator, data_dir, file_types):
        create_test_file(os.path.join(data_dir, "a.txt"))
        with pytest.raises(Par2ProtectError) as exc_info:
            orchestrator.submit_protect(data_dir, file_types=file_types)
        assert exc_info.value.kind == ErrorKind.VALIDATION

    def test_file_types_rejected_for_single_file(self, orchestrator, data_dir):
        path = create_test_file(os.path.join(data_dir, "a.txt"))
        with pytest.raises(Par2ProtectError) as exc_info:
            orchestrator.submit_protect(path, file_types=["txt"])
        assert exc_info.value.kind == ErrorKind.VALIDATION

    def test_file_types_matching_nothing_fails(self, engine, data_dir):
        create_test_file(os.path.join(data_dir, "a.txt"))
        operation = protect_now(engine, data_dir, file_types=["mkv"])
        assert operation.status == OperationStatus.FAILED
        assert operation.result["kind"] == ErrorKind.VALIDATION.value

    def test_duplicate_submission_returns_active_operation(self, orchestrator, data_dir):
        path = create_test_file(os.path.join(data_dir, "a.txt"))
        first = orchestrator.submit_protect(path)
        second = orchestrator.submit_protect(path)
        assert first.id == second.id

    def test_existing_parity_is_skipped_and_adopted(self, engine, fake_runner, data_dir):
        path = create_test_file(os.path.join(data_dir, "a.txt"))
        fake_runner.responses["create"] = ProcessResult(
            exit_code=1, stderr='Could not create "a.txt.par2": par2 files already exist.', pid=FAKE_PID)
        operation = protect_now(engine, path)

        assert operation.status == OperationStatus.SKIPPED
        assert operation.result["kind"] == ErrorKind.FILES_EXIST.value
        item = engine.catalog.get(path)
        assert item.last_status == ItemStatus.UNKNOWN

    def test_nonzero_exit_fails_with_stderr(self, engine, fake_runner, data_dir):
        path = create_test_file(os.path.join(data_dir, "a.txt"))
        fake_runner.responses["create"] = ProcessResult(exit_code=2, stderr="  Out of disk space\n", pid=FAKE_PID)
        operation = protect_now(engine, path)

        assert operation.status == OperationStatus.FAILED
        assert operation.result["error"] == "Out of disk space"
        assert operation.result["context"]["stderr"] == "  Out of disk space\n"
        assert operation.result["context"]["exit_code"] == 2
        assert operation.result["kind"] == ErrorKind.EXECUTION.value
        assert engine.catalog.get(path) is None

    def test_success_without_parity_files_fails(self, engine, fake_runner, data_dir):
        path = create_test_file(os.path.join(data_dir, "a.txt"))
        fake_runner.responses["create"] = ProcessResult(exit_code=0, stdout="Done", pid=FAKE_PID)
        operation = protect_now(engine, path)
        assert operation.status == OperationStatus.FAILED
        assert engine.catalog.get(path) is None

    def test_timeout_fails_with_timeout_kind(self, engine, fake_runner, data_dir):
        path = create_test_file(os.path.join(data_dir, "a.txt"))
        fake_runner.responses["create"] = ProcessResult(exit_code=-15, timed_out=True, pid=FAKE_PID)
        operation = protect_now(engine, path)

        assert operation.status == OperationStatus.FAILED
        assert operation.result["kind"] == ErrorKind.TIMEOUT.value

    def test_unexpected_exception_fails_operation(self, engine, fake_runner, data_dir):
        def _explode(command, cwd):
            raise RuntimeError("kaboom")

        path = create_test_file(os.path.join(data_dir, "a.txt"))
        fake_runner.responses["create"] = _explode
        operation = protect_now(engine, path)
        assert operation.status == OperationStatus.FAILED
        assert "kaboom" in operation.result["error"]

    @pytest.mark.parametrize("bad_path,kind", [
        ("", ErrorKind.VALIDATION),
        ("relative/path", ErrorKind.VALIDATION),
        ("/definitely/not/here", ErrorKind.NOT_FOUND),
    ])
    def test_invalid_paths_rejected_before_queueing(self, engine, bad_path, kind):
        with pytest.raises(Par2ProtectError) as exc_info:
            engine.orchestrator.submit_protect(bad_path)
        assert exc_info.value.kind == kind
        assert engine.queue.list_active() == []

    def test_parity_directory_cannot_be_protected(self, orchestrator, data_dir):
        parity_file = create_test_file(os.path.join(data_dir, ".parity", "x.par2"))
        with pytest.raises(Par2ProtectError) as exc_info:
            orchestrator.submit_protect(parity_file)
        assert exc_info.value.kind == ErrorKind.VALIDATION

    @pytest.mark.parametrize("redundancy", [0, 101, True, "10"])
    def test_invalid_redundancy(self, orchestrator, data_dir, redundancy):
        path = create_test_file(os.path.join(data_dir, "a.txt"))
        with pytest.raises(Par2ProtectError) as exc_info:
            orchestrator.submit_protect(path, redundancy)
        assert exc_info.value.kind == ErrorKind.VALIDATION


# ============================================================================
# Verify and repair
# ============================================================================

class TestVerifyAndRepair:

    def test_verify_intact_item(self, engine, data_dir):
        path = create_test_file(os.path.join(data_dir, "a.txt"))
        protect_now(engine, path)
        operation = verify_now(engine, path)

        assert operation.status == OperationStatus.COMPLETED
        assert operation.result["status"] == "VERIFIED"
        item = engine.catalog.get(path)
        assert item.last_status == ItemStatus.PROTECTED
        assert item.last_verified is not None
        assert engine.catalog.history(path)[0].status == "PROTECTED"

    def test_verify_damaged_item(self, engine, fake_runner, data_dir):
        path = create_test_file(os.path.join(data_dir, "a.txt"))
        protect_now(engine, path)
        fake_runner.responses["verify"] = ProcessResult(exit_code=1, stdout=DAMAGED_OUTPUT, pid=FAKE_PID)
        operation = verify_now(engine, path)

        assert operation.status == OperationStatus.COMPLETED
        assert operation.result["status"] == "DAMAGED"
        assert operation.result["counts"]["damaged"] == 1
        item = engine.catalog.get(path)
        assert item.last_status == ItemStatus.DAMAGED
        assert "Damaged: 1" in item.last_details

    def test_verify_with_missing_parity(self, engine, data_dir):
        path = create_test_file(os.path.join(data_dir, "a.txt"))
        protect_now(engine, path)
        os.remove(os.path.join(data_dir, ".parity", "a.txt.par2"))
        operation = verify_now(engine, path)

        assert operation.status == OperationStatus.COMPLETED
        assert operation.result["status"] == "MISSING"
        assert engine.catalog.get(path).last_status == ItemStatus.MISSING

    def test_verify_error_fails_operation_and_marks_item(self, engine, fake_runner, data_dir):
        path = create_test_file(os.path.join(data_dir, "a.txt"))
        protect_now(engine, path)
        fake_runner.responses["verify"] = ProcessResult(exit_code=3, stderr="Could not read file\n", pid=FAKE_PID)
        operation = verify_now(engine, path)

        assert operation.status == OperationStatus.FAILED
        assert operation.result["error"] == "Could not read file"
        assert operation.result["context"]["stderr"] == "Could not read file\n"
        assert engine.catalog.get(path).last_status == ItemStatus.ERROR

    def test_recently_verified_item_is_skipped(self, engine, fake_runner, data_dir):
        path = create_test_file(os.path.join(data_dir, "a.txt"))
        protect_now(engine, path)
        verify_now(engine, path)

        operations, errors = engine.orchestrator.submit_verify(path)
        assert operations[0].status == OperationStatus.SKIPPED
        assert operations[0].result["reason"] == "Verified recently"
        assert [c["verb"] for c in fake_runner.calls] == ["create", "verify"]

    def test_verify_all_and_bad_targets(self, engine, data_dir):
        a = create_test_file(os.path.join(data_dir, "a.txt"))
        b = create_test_file(os.path.join(data_dir, "b.txt"))
        protect_now(engine, a)
        protect_now(engine, b)

        operations, errors = engine.orchestrator.submit_verify("all", force=True)
        assert sorted(op.path for op in operations) == [a, b]
        assert errors == []

        operations, errors = engine.orchestrator.submit_verify([a, "relative", "/not/protected"], force=True)
        assert [op.path for op in operations] == [a]
        assert [e["kind"] for e in errors] == ["validation", "not_found"]

    def test_verify_metadata_discrepancies(self, engine, data_dir):
        engine.config.verification.verify_metadata = True
        path = create_test_file(os.path.join(data_dir, "a.txt"))
        os.chmod(path, 0o644)
        protect_now(engine, path)
        os.chmod(path, 0o600)
        operation = verify_now(engine, path)

        assert path in operation.result["metadata_issues"]
        assert "metadata differs" in engine.catalog.get(path).last_details

    def test_damage_triggers_auto_repair(self, engine, fake_runner, data_dir):
        path = create_test_file(os.path.join(data_dir, "a.txt"))
        protect_now(engine, path)
        fake_runner.responses["verify"] = ProcessResult(exit_code=1, stdout=DAMAGED_OUTPUT, pid=FAKE_PID)
        operation = verify_now(engine, path, auto_repair=True)

        repair_id = operation.result["repair_operation_id"]
        repair = engine.queue.get(repair_id)
        assert repair.operation_type == OperationType.REPAIR
        assert repair.status == OperationStatus.COMPLETED
        assert repair.result["status"] == "REPAIRED"
        assert engine.catalog.get(path).last_status == ItemStatus.PROTECTED

    @pytest.mark.parametrize("output,item_status", [
        ("Repair is not possible.", ItemStatus.DAMAGED),
        ("Repair is not possible. You need 5 more recovery blocks; not enough recovery blocks.",
         ItemStatus.MISSING),
    ])
    def test_repair_not_possible(self, engine, fake_runner, data_dir, output, item_status):
        path = create_test_file(os.path.join(data_dir, "a.txt"))
        protect_now(engine, path)
        fake_runner.responses["repair"] = ProcessResult(exit_code=2, stdout=output, pid=FAKE_PID)
        operation = engine.orchestrator.submit_repair(path)
        engine.orchestrator.run_until_idle()

        operation = engine.queue.get(operation.id)
        assert operation.status == OperationStatus.COMPLETED
        assert operation.result["item_status"] == item_status.value
        assert engine.catalog.get(path).last_status == item_status

    def test_repair_without_parity_fails(self, engine, data_dir):
        path = create_test_file(os.path.join(data_dir, "a.txt"))
        protect_now(engine, path)
        os.remove(os.path.join(data_dir, ".parity", "a.txt.par2"))
        operation = engine.orchestrator.submit_repair(path)
        engine.orchestrator.run_until_idle()

        assert engine.queue.get(operation.id).status == OperationStatus.FAILED
        assert engine.catalog.get(path).last_status == ItemStatus.MISSING

    def test_repair_error_keeps_raw_stderr(self, engine, fake_runner, data_dir):
        path = create_test_file(os.path.join(data_dir, "a.txt"))
        protect_now(engine, path)
        fake_runner.responses["repair"] = ProcessResult(exit_code=3, stderr="\tI/O error on a.txt\n",
                                                        pid=FAKE_PID)
        operation = engine.orchestrator.submit_repair(path)
        engine.orchestrator.run_until_idle()

        operation = engine.queue.get(operation.id)
        assert operation.status == OperationStatus.FAILED
        assert operation.result["error"] == "I/O error on a.txt"
        assert operation.result["context"]["stderr"] == "\tI/O error on a.txt\n"
        assert engine.catalog.get(path).last_status == ItemStatus.ERROR

    def test_repair_unknown_path(self, orchestrator):
        with pytest.raises(Par2ProtectError) as exc_info:
            orchestrator.submit_repair("/not/protected")
        assert exc_info.value.kind == ErrorKind.NOT_FOUND


# ============================================================================
# Recovery
# ============================================================================

class TestRecovery:

    def test_orphaned_processing_operation_is_failed(self, engine, data_dir):
        op = engine.queue.enqueue(OperationType.VERIFY, {"path": os.path.join(data_dir, "a.txt")})
        engine.queue.claim_next()
        engine.queue.attach_process(op.id, 31337)

        result = engine.orchestrator.recover()
        stored = engine.queue.get(op.id)
        assert result["orphaned_operations"] == 1
        assert stored.status == OperationStatus.FAILED
        assert stored.result["error"] == "Operation orphaned by restart"
        assert stored.result["kind"] == ErrorKind.CONSISTENCY.value

    def test_operation_with_live_process_is_kept(self, engine, fake_runner, data_dir):
        op = engine.queue.enqueue(OperationType.VERIFY, {"path": os.path.join(data_dir, "a.txt")})
        engine.queue.claim_next()
        engine.queue.attach_process(op.id, 31337)
        fake_runner.processes = [RunningProcess(pid=31337, command_line="par2 verify -B/d /d/.parity/a.par2")]

        assert engine.orchestrator.recover()["orphaned_operations"] == 0
        assert engine.queue.get(op.id).status == OperationStatus.PROCESSING

    def test_items_without_parity_marked_missing(self, engine, data_dir):
        path = create_test_file(os.path.join(data_dir, "a.txt"))
        protect_now(engine, path)
        os.remove(os.path.join(data_dir, ".parity", "a.txt.par2"))

        assert engine.orchestrator.recover()["missing_items"] == 1
        item = engine.catalog.get(path)
        assert item.last_status == ItemStatus.MISSING
        assert item.last_verified is None

    def test_start_runs_recovery_then_processes_queue(self, engine, data_dir):
        orphan = engine.queue.enqueue(OperationType.VERIFY, {"path": "/gone"})
        engine.queue.claim_next()
        path = create_test_file(os.path.join(data_dir, "a.txt"))
        operation = engine.orchestrator.submit_protect(path)

        engine.orchestrator.start(workers=1)
        try:
            done = engine.orchestrator.wait_for([operation.id], timeout=10)
        finally:
            engine.orchestrator.stop()
        assert done[0].status == OperationStatus.COMPLETED
        assert engine.queue.get(orphan.id).status == OperationStatus.FAILED


# ============================================================================
# Storage errors during execution
# ============================================================================

class TestStorageErrors:

    @staticmethod
    def _locked_once(real):
        calls = []

        def _call(*args, **kwargs):
            calls.append(args)
            if len(calls) == 1:
                raise sqlite3.OperationalError("database is locked")
            return real(*args, **kwargs)
        return _call

    def test_storage_error_fails_claimed_operation(self, engine, data_dir, monkeypatch):
        path = create_test_file(os.path.join(data_dir, "a.txt"))
        operation = engine.orchestrator.submit_protect(path)
        monkeypatch.setattr(engine.catalog, "upsert", self._locked_once(engine.catalog.upsert))

        with pytest.raises(sqlite3.OperationalError):
            engine.orchestrator.process_next()

        failed = engine.queue.get(operation.id)
        assert failed.status == OperationStatus.FAILED
        assert failed.result["kind"] == ErrorKind.STORAGE.value
        assert "database is locked" in failed.result["error"]
        assert engine.queue.count_processing() == 0

        again = protect_now(engine, path)
        assert again.status == OperationStatus.COMPLETED

    def test_failure_recorded_after_transient_lock(self, engine, data_dir, monkeypatch):
        path = create_test_file(os.path.join(data_dir, "a.txt"))
        operation = engine.orchestrator.submit_protect(path)
        monkeypatch.setattr(engine.catalog, "upsert", self._locked_once(engine.catalog.upsert))
        monkeypatch.setattr(engine.queue, "fail", self._locked_once(engine.queue.fail))

        with pytest.raises(sqlite3.OperationalError):
            engine.orchestrator.process_next()
        assert engine.queue.get(operation.id).status == OperationStatus.FAILED

    def test_operation_left_processing_when_storage_stays_down(self, engine, data_dir, monkeypatch, caplog):
        path = create_test_file(os.path.join(data_dir, "a.txt"))
        operation = engine.orchestrator.submit_protect(path)

        def _locked(*args, **kwargs):
            raise sqlite3.OperationalError("database is locked")

        monkeypatch.setattr(engine.catalog, "upsert", _locked)
        monkeypatch.setattr(engine.queue, "fail", _locked)
        with pytest.raises(sqlite3.OperationalError):
            engine.orchestrator.process_next()

        assert engine.queue.get(operation.id).status == OperationStatus.PROCESSING
        assert "recovery will fail it" in caplog.text
        monkeypatch.undo()
        assert engine.orchestrator.recover()["orphaned_operations"] == 1
        assert engine.queue.get(operation.id).status == OperationStatus.FAILED


# ============================================================================
# Cancellation
# ============================================================================

class TestCancel:

    @pytest.mark.parametrize("operation_id", ["", "123", "op_ZZ", "op_1; kill -9 1"])
    def test_malformed_id_rejected(self, orchestrator, operation_id):
        with pytest.raises(Par2ProtectError) as exc_info:
            orchestrator.cancel(operation_id)
        assert exc_info.value.kind == ErrorKind.VALIDATION

    def test_unknown_id(self, orchestrator):
        with pytest.raises(Par2ProtectError) as exc_info:
            orchestrator.cancel("op_deadbeef")
        assert exc_info.value.kind == ErrorKind.NOT_FOUND

    def test_cancel_pending(self, engine, fake_runner, data_dir):
        path = create_test_file(os.path.join(data_dir, "a.txt"))
        operation = engine.orchestrator.submit_protect(path)
        assert engine.orchestrator.cancel(operation.id) == 0
        assert engine.queue.get(operation.id).status == OperationStatus.CANCELLED
        assert engine.orchestrator.run_until_idle() == 0
        assert fake_runner.calls == []

    def test_cancel_kills_correlated_processes(self, engine, fake_runner, data_dir):
        op = engine.queue.enqueue(OperationType.VERIFY, {"path": os.path.join(data_dir, "a.txt")})
        engine.queue.claim_next()
        engine.queue.attach_process(op.id, 5001)
        fake_runner.processes = [
            RunningProcess(pid=5001, command_line="par2 verify x.par2"),
            RunningProcess(pid=5002, command_line="par2 verify /d/.parity/a.txt.par2", operation_id=op.id),
            RunningProcess(pid=5003, command_line="par2 verify other.par2"),
        ]

        assert engine.orchestrator.cancel(op.id) == 2
        assert sorted(fake_runner.cancelled_pids) == [5001, 5002]
        assert engine.queue.get(op.id).status == OperationStatus.CANCELLED

    def test_cancel_during_run_keeps_cancelled_state(self, engine, fake_runner, data_dir):
        path = create_test_file(os.path.join(data_dir, "a.txt"))
        protect_now(engine, path)

        def _cancel_mid_run(command, cwd):
            engine.orchestrator.cancel(fake_runner.calls[-1]["operation_id"])
            return ProcessResult(exit_code=-15, pid=FAKE_PID)

        fake_runner.responses["verify"] = _cancel_mid_run
        operation = verify_now(engine, path)

        assert operation.status == OperationStatus.CANCELLED
        assert engine.catalog.get(path).last_verified is None


# ============================================================================
# Removal
# ============================================================================

class TestRemoval:

    def test_remove_one_of_several_files_sharing_parity(self, engine, data_dir):
        paths = [create_test_file(os.path.join(data_dir, f"{n}.txt")) for n in ("a", "b", "c")]
        for path in paths:
            protect_now(engine, path)
        parity_dir = os.path.join(data_dir, ".parity")

        engine.orchestrator.remove_item(paths[0])
        assert engine.catalog.get(paths[0]) is None
        assert not os.path.exists(os.path.join(parity_dir, "a.txt.par2"))
        assert os.path.exists(os.path.join(parity_dir, "b.txt.par2"))

        outcome = engine.orchestrator.remove_paths(paths[1:])
        assert outcome == {"removed": paths[1:], "errors": []}
        assert not os.path.exists(parity_dir)
        assert all(os.path.exists(p) for p in paths)

    def test_remove_keeps_parity_set_recorded_for_another_item(self, engine, data_dir):
        directory = os.path.join(data_dir, "x")
        inner = create_test_file(os.path.join(directory, "x"))
        protect_now(engine, directory)
        parity_dir = os.path.join(directory, ".parity")
        engine.catalog.upsert(ProtectedItem(path=inner, mode=ItemMode.FILE, redundancy=10,
                                            parity_location=parity_dir))

        assert engine.orchestrator.remove_item(inner) == []
        assert engine.catalog.get(inner) is None
        assert engine.catalog.get(directory) is not None
        assert os.path.isfile(os.path.join(parity_dir, "x.par2"))

    def test_remove_directory_item(self, engine, data_dir):
        create_test_file(os.path.join(data_dir, "a.txt"))
        protect_now(engine, data_dir)
        engine.orchestrator.remove_item(data_dir)
        assert not os.path.exists(os.path.join(data_dir, ".parity"))
        assert os.path.exists(os.path.join(data_dir, "a.txt"))

    def test_tampered_parity_location_fails_closed(self, engine, data_dir, temp_dir):
        path = create_test_file(os.path.join(data_dir, "a.txt"))
        protect_now(engine, path)
        elsewhere = os.path.join(temp_dir, "elsewhere", ".parity")
        keep = create_test_file(os.path.join(elsewhere, "keep.par2"))
        item = engine.catalog.get(path)
        item.parity_location = elsewhere
        engine.catalog.upsert(item)

        outcome = engine.orchestrator.remove_paths([path])
        assert outcome["removed"] == []
        assert outcome["errors"][0]["kind"] == ErrorKind.CONSISTENCY.value
        assert engine.catalog.get(path) is not None
        assert os.path.exists(keep)

    def test_batch_continues_after_failures(self, engine, data_dir):
        path = create_test_file(os.path.join(data_dir, "a.txt"))
        protect_now(engine, path)

        outcome = engine.orchestrator.remove_paths(["relative", "/not/protected", path])
        assert outcome["removed"] == [path]
        assert [e["kind"] for e in outcome["errors"]] == ["validation", "not_found"]

    def test_remove_refused_while_operation_active(self, engine, data_dir):
        path = create_test_file(os.path.join(data_dir, "a.txt"))
        protect_now(engine, path)
        engine.orchestrator.submit_verify(path, force=True)

        with pytest.raises(Par2ProtectError) as exc_info:
            engine.orchestrator.remove_item(path)
        assert exc_info.value.kind == ErrorKind.VALIDATION
        assert engine.catalog.get(path) is not None

    def test_queued_remove(self, engine, data_dir):
        path = create_test_file(os.path.join(data_dir, "a.txt"))
        protect_now(engine, path)
        operation = engine.orchestrator.submit_remove(path)
        engine.orchestrator.run_until_idle()

        assert engine.queue.get(operation.id).status == OperationStatus.COMPLETED
        assert engine.catalog.get(path) is None

    def test_catalog_rejects_item_outside_parity_layout(self, engine):
        with pytest.raises(Par2ProtectError):
            engine.catalog.upsert(ProtectedItem(path="/d/a", mode=ItemMode.FILE, redundancy=10,
                                                parity_location="/d"))
