"""Tests for the extraction service: account lifecycle, key selection and jobs."""

import asyncio
import os
from pathlib import Path

import pytest
import pytest_asyncio

from wxlive.core.account import Account, StaticAccountDetector
from wxlive.core.errors import (
    ConfigError,
    DecryptError,
    FileMonitorError,
    KeyResolutionError,
    ServiceStopped,
)
from wxlive.core.events import (
    DatabaseFile,
    DecryptionComplete,
    ErrorEvent,
    InstanceDetected,
    InstanceTerminated,
    KeyResolutionComplete,
)
from wxlive.core.image_decryptor import ImageFormat
from wxlive.core.monitor import FileEvent, FileEventKind
from wxlive.core.service import KEY_EXTRACTION_DISABLED, NO_AVAILABLE_KEYS, ExtractionService
from wxlive.utils.config_loader import ServiceConfig

from conftest import DATA_KEY_HEX, IMAGE_KEY_HEX, SALT, WRONG_DATA_KEY_HEX

pytestmark = pytest.mark.asyncio


def drain(service):
    events = []
    while not service._events.empty():
        events.append(service._events.get_nowait())
    return events


async def wait_for_event(service, kind, timeout=10):
    async def _next():
        while True:
            event = await service.next_event()
            if isinstance(event, kind):
                return event
    return await asyncio.wait_for(_next(), timeout)


@pytest.fixture
def data_dir(tmp_path):
    path = tmp_path / "xwechat_files"
    path.mkdir()
    return path


@pytest_asyncio.fixture
async def make_service(tmp_path, data_dir):
    services = []

    def _make(with_keys=True, detector=None, **overrides):
        options = dict(
            data_dir=str(data_dir),
            work_dir=str(tmp_path / "decrypted"),
            auto_decrypt=False,
            account_poll_interval=0.05,
        )
        if with_keys:
            options.update(data_key=DATA_KEY_HEX, image_key=IMAGE_KEY_HEX)
        options.update(overrides)
        service = ExtractionService(
            ServiceConfig(**options),
            detector=detector if detector is not None else StaticAccountDetector(),
        )
        services.append(service)
        return service

    yield _make

    for service in services:
        await service.stop()


def account_for(data_dir, pid=42, name="wxid_alice"):
    account_dir = data_dir / name
    account_dir.mkdir(exist_ok=True)
    return Account(pid, name, str(account_dir))


# ─── Account lifecycle ───

async def test_detected_account_receives_fallback_keys(make_service, data_dir, key_pair):
    service = make_service()
    account = account_for(data_dir)

    await service.handle_instance_detected(account)

    assert service.keys.get(42) == key_pair
    assert service.keys.get(0) == key_pair
    assert service.get_accounts() == [account]
    assert drain(service) == [KeyResolutionComplete(42, True), InstanceDetected(account)]


async def test_repeated_detection_emits_once(make_service, data_dir):
    service = make_service()
    account = account_for(data_dir)

    await service.handle_instance_detected(account)
    await service.handle_instance_detected(account)

    assert len(drain(service)) == 2


async def test_detection_without_any_keys(make_service, data_dir):
    service = make_service(with_keys=False)
    account = account_for(data_dir)

    await service.handle_instance_detected(account)

    assert 42 not in service.keys
    assert drain(service) == [InstanceDetected(account)]


async def test_invalid_config_key_is_reported_on_detection(make_service, data_dir):
    service = make_service(data_key="abc")
    account = account_for(data_dir)

    await service.handle_instance_detected(account)

    first, second = drain(service)
    assert isinstance(first, KeyResolutionComplete)
    assert first.success is False
    assert "data_key" in first.error
    assert second == InstanceDetected(account)


async def test_termination_removes_account_and_keys(make_service, data_dir, key_pair):
    service = make_service()
    await service.handle_instance_detected(account_for(data_dir))
    drain(service)

    await service.handle_instance_terminated(42)

    assert 42 not in service.keys
    assert service.accounts == {}
    # the fallback slot survives every termination
    assert service.keys.get(0) == key_pair
    assert drain(service) == [InstanceTerminated(42)]


async def test_file_event_after_termination_without_fallback(make_service, data_dir):
    service = make_service(with_keys=False)
    account = account_for(data_dir)
    await service.handle_instance_detected(account)
    await service.set_keys(42, DATA_KEY_HEX, IMAGE_KEY_HEX)
    await service.handle_instance_terminated(42)
    drain(service)

    path = Path(account.data_dir) / "db_storage" / "message" / "message_0.db"
    job = await service.handle_file_event(FileEvent(FileEventKind.MODIFIED, path))

    assert job is None
    assert 42 not in service.keys
    assert drain(service) == [DatabaseFile(path), ErrorEvent(NO_AVAILABLE_KEYS)]


async def test_global_slot_is_never_terminated(make_service, key_pair):
    service = make_service()
    await service.set_keys(0, DATA_KEY_HEX, IMAGE_KEY_HEX)
    drain(service)

    await service.handle_instance_terminated(0)

    assert service.keys.get(0) == key_pair
    assert drain(service) == []


async def test_detect_instances_when_not_running(make_service, data_dir):
    account = account_for(data_dir)
    detector = StaticAccountDetector([account])
    service = make_service(detector=detector)

    assert await service.detect_instances() == [account]
    assert 42 in service.accounts

    detector.accounts.clear()
    await service.detect_instances()

    assert service.accounts == {}
    assert InstanceTerminated(42) in drain(service)


async def test_detector_failure_becomes_error_event(make_service):
    class BrokenDetector(StaticAccountDetector):
        def get_running_instances(self):
            raise RuntimeError("pgrep exploded")

    service = make_service(detector=BrokenDetector())

    assert await service.detect_instances() == []
    (event,) = drain(service)
    assert isinstance(event, ErrorEvent)
    assert "pgrep exploded" in event.message


# ─── File events ───

async def test_file_event_without_keys(make_service, data_dir):
    service = make_service(with_keys=False)
    path = data_dir / "wxid_alice" / "db_storage" / "message" / "message_0.db"

    job = await service.handle_file_event(FileEvent(FileEventKind.MODIFIED, path))

    assert job is None
    assert drain(service) == [DatabaseFile(path), ErrorEvent(NO_AVAILABLE_KEYS)]


async def test_non_database_and_deleted_events_are_ignored(make_service, data_dir):
    service = make_service()

    assert await service.handle_file_event(
        FileEvent(FileEventKind.MODIFIED, data_dir / "message_0.db-wal")) is None
    assert await service.handle_file_event(
        FileEvent(FileEventKind.DELETED, data_dir / "message_0.db")) is None
    assert drain(service) == []


async def test_file_event_decrypts_with_owner_keys(make_service, data_dir, tmp_path, make_v4_db):
    service = make_service()
    account = account_for(data_dir)
    await service.handle_instance_detected(account)
    drain(service)

    src = Path(account.data_dir) / "db_storage" / "message" / "message_0.db"
    tag, (plain,) = make_v4_db(src)

    job = await service.handle_file_event(FileEvent(FileEventKind.MODIFIED, src))
    assert await job is None

    expected = tmp_path / "decrypted" / "42" / "message_0.db"
    assert drain(service) == [
        DatabaseFile(src),
        DecryptionComplete(src, expected, True),
    ]
    assert expected.read_bytes() == SALT + tag + plain
    assert service.pending_jobs == 0


async def test_file_outside_accounts_uses_fallback_slot(make_service, data_dir, tmp_path, make_v4_db):
    service = make_service()
    await service.set_keys(0, DATA_KEY_HEX, IMAGE_KEY_HEX)
    src = data_dir / "orphan" / "session.db"
    make_v4_db(src)

    job = await service.handle_file_event(FileEvent(FileEventKind.CREATED, src))
    await job

    assert (tmp_path / "decrypted" / "0" / "session.db").exists()


async def test_wrong_key_reports_failed_job(make_service, data_dir, make_v4_db):
    service = make_service(data_key=WRONG_DATA_KEY_HEX)
    await service.set_keys(0, WRONG_DATA_KEY_HEX, IMAGE_KEY_HEX)
    src = data_dir / "message_0.db"
    make_v4_db(src)

    job = await service.handle_file_event(FileEvent(FileEventKind.MODIFIED, src))
    error = await job

    assert isinstance(error, DecryptError)
    complete = drain(service)[-1]
    assert isinstance(complete, DecryptionComplete)
    assert complete.success is False
    assert "HMAC" in complete.error


async def test_no_jobs_after_stop(make_service, data_dir, make_v4_db):
    service = make_service()
    await service.set_keys(0, DATA_KEY_HEX, IMAGE_KEY_HEX)
    src = data_dir / "message_0.db"
    make_v4_db(src)
    await service.stop()
    drain(service)

    job = await service.handle_file_event(FileEvent(FileEventKind.MODIFIED, src))

    assert job is None
    assert drain(service) == [DatabaseFile(src)]


async def test_stop_does_not_hang_on_full_event_queue(make_service, data_dir, make_v4_db):
    service = make_service(queue_size=1)
    # nobody reads events, so the queue stays full from here on
    await service.set_keys(0, DATA_KEY_HEX, IMAGE_KEY_HEX)
    src = data_dir / "message_0.db"
    tag, (plain,) = make_v4_db(src)

    job = await service.handle_file_event(FileEvent(FileEventKind.MODIFIED, src))
    await asyncio.wait({job}, timeout=2)
    assert not job.done()

    await asyncio.wait_for(service.stop(), 10)

    assert job.done()
    assert job.result() is None
    assert (service.output_path_for(src, 0)).read_bytes() == SALT + tag + plain
    assert drain(service) == [KeyResolutionComplete(0, True)]


async def test_back_to_back_events_share_one_job(make_service, data_dir, make_v4_db):
    service = make_service()
    await service.set_keys(0, DATA_KEY_HEX, IMAGE_KEY_HEX)
    drain(service)
    src = data_dir / "message_0.db"
    tag, (plain,) = make_v4_db(src)
    event = FileEvent(FileEventKind.MODIFIED, src)

    jobs = [await service.handle_file_event(event) for _ in range(3)]

    assert jobs[0] is jobs[1] is jobs[2]
    assert service.pending_jobs == 1
    assert await jobs[0] is None

    expected = service.output_path_for(src, 0)
    events = drain(service)
    assert events.count(DatabaseFile(src)) == 3
    # the requests made while the first run was pending collapse into one rerun
    assert [e for e in events if isinstance(e, DecryptionComplete)] == [
        DecryptionComplete(src, expected, True),
        DecryptionComplete(src, expected, True),
    ]
    assert expected.read_bytes() == SALT + tag + plain
    assert service._active == {}


async def test_new_event_after_job_finished_starts_new_job(make_service, data_dir, make_v4_db):
    service = make_service()
    await service.set_keys(0, DATA_KEY_HEX, IMAGE_KEY_HEX)
    src = data_dir / "message_0.db"
    make_v4_db(src)
    event = FileEvent(FileEventKind.MODIFIED, src)

    first = await service.handle_file_event(event)
    await first
    second = await service.handle_file_event(event)
    await second

    assert first is not second


# ─── Manual operations ───

async def test_extract_keys_is_disabled(make_service):
    service = make_service()

    with pytest.raises(KeyResolutionError, match="disabled in legal-safe mode"):
        await service.extract_keys_for_instance(1234)

    assert 1234 not in service.keys
    assert drain(service) == [KeyResolutionComplete(1234, False, KEY_EXTRACTION_DISABLED)]


async def test_invalid_set_keys_stores_nothing(make_service):
    service = make_service()

    with pytest.raises(ConfigError):
        await service.set_keys(7, DATA_KEY_HEX[:63], IMAGE_KEY_HEX)

    assert 7 not in service.keys
    assert drain(service) == []


async def test_set_keys_overwrites(make_service, key_pair, wrong_key_pair):
    service = make_service()
    await service.set_keys(7, WRONG_DATA_KEY_HEX, IMAGE_KEY_HEX)
    await service.set_keys(7, "0x" + DATA_KEY_HEX, IMAGE_KEY_HEX)

    assert service.keys.get(7) == key_pair
    assert drain(service) == [KeyResolutionComplete(7, True)] * 2


async def test_manual_decrypt_database(make_service, data_dir, tmp_path, make_v4_db):
    service = make_service()
    src = data_dir / "contact.db"
    make_v4_db(src, pages=2)

    with pytest.raises(DecryptError, match="没有找到 PID 7"):
        await service.decrypt_database(src, 7)

    await service.set_keys(7, DATA_KEY_HEX, IMAGE_KEY_HEX)
    output = await service.decrypt_database(src, 7)

    assert output == tmp_path / "decrypted" / "7" / "contact.db"
    # salt + stored tag, then two pages of plaintext
    assert output.stat().st_size == 48 + 2 * (4096 - 48 - 16)


async def test_validate_keys(make_service, data_dir, make_v4_db):
    service = make_service()
    src = data_dir / "message_0.db"
    make_v4_db(src)

    assert await service.validate_keys(src, DATA_KEY_HEX, IMAGE_KEY_HEX) is True
    assert await service.validate_keys(src, WRONG_DATA_KEY_HEX, IMAGE_KEY_HEX) is False
    with pytest.raises(ConfigError):
        await service.validate_keys(src, "nothex", IMAGE_KEY_HEX)


async def test_decrypt_image_defaults_to_work_dir(make_service, data_dir, tmp_path):
    service = make_service()
    png = bytes([0x89, 0x50, 0x4E, 0x47, 0x0D, 0x0A, 0x1A, 0x0A]) + b"\x00" * 16
    src = data_dir / "abc.dat"
    src.write_bytes(bytes(b ^ 0x5A for b in png))

    result = await service.decrypt_image(src)

    assert result.format is ImageFormat.PNG
    assert result.output_path == tmp_path / "decrypted" / "0" / "images" / "abc.png"
    assert result.output_path.read_bytes() == png


async def test_manual_operations_rejected_after_stop(make_service, data_dir, make_v4_db):
    service = make_service()
    await service.set_keys(7, DATA_KEY_HEX, IMAGE_KEY_HEX)
    src = data_dir / "contact.db"
    make_v4_db(src)
    image = data_dir / "abc.dat"
    image.write_bytes(b"\x00" * 32)
    await service.stop()

    with pytest.raises(ServiceStopped):
        await service.decrypt_database(src, 7)
    with pytest.raises(ServiceStopped):
        await service.validate_keys(src, DATA_KEY_HEX, IMAGE_KEY_HEX)
    with pytest.raises(ServiceStopped):
        await service.decrypt_image(image)
    with pytest.raises(ServiceStopped):
        await service.detect_instances()

    assert not service.output_path_for(src, 7).exists()
    assert service._executor is None
    assert service.pending_jobs == 0


async def test_manual_decrypt_joins_running_job(make_service, data_dir, make_v4_db):
    service = make_service()
    await service.set_keys(0, DATA_KEY_HEX, IMAGE_KEY_HEX)
    src = data_dir / "message_0.db"
    make_v4_db(src)

    job = await service.handle_file_event(FileEvent(FileEventKind.MODIFIED, src))
    output = await service.decrypt_database(src, 0)

    assert job.done()
    assert output == service.output_path_for(src, 0)
    assert output.exists()


# ─── Running service ───

async def test_start_rejects_invalid_config_keys(make_service):
    service = make_service(data_key="not-a-key")

    with pytest.raises(ConfigError):
        await service.start()

    assert not service.running
    assert service._tasks == []


async def test_start_fails_on_missing_watch_dir(make_service, tmp_path):
    service = make_service(auto_decrypt=True, data_dir=str(tmp_path / "missing"))

    with pytest.raises(FileMonitorError):
        await service.start()

    assert not service.running
    assert service._tasks == []


async def test_running_service_tracks_accounts(make_service, data_dir):
    account = account_for(data_dir)
    detector = StaticAccountDetector([account])
    service = make_service(detector=detector)

    await service.start()
    assert service.running

    assert await wait_for_event(service, KeyResolutionComplete) == KeyResolutionComplete(42, True)
    assert await wait_for_event(service, InstanceDetected) == InstanceDetected(account)

    detector.accounts.clear()
    assert await wait_for_event(service, InstanceTerminated) == InstanceTerminated(42)
    assert 42 not in service.keys

    await service.stop()
    assert not service.running


async def test_running_service_decrypts_watched_files(make_service, data_dir, tmp_path, make_v4_db):
    service = make_service(
        auto_decrypt=True,
        debounce_ms=200,
        max_wait_ms=2000,
        watch_poll_interval=0.05,
    )
    await service.start()

    staging = tmp_path / "staging" / "message_0.db"
    tag, (plain,) = make_v4_db(staging)
    target = data_dir / "wxid_alice" / "db_storage" / "message" / "message_0.db"
    target.parent.mkdir(parents=True)
    os.replace(staging, target)

    complete = await wait_for_event(service, DecryptionComplete)

    assert complete.success, complete.error
    assert complete.input_path == target
    assert complete.output_path.read_bytes() == SALT + tag + plain
