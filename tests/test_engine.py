"""
Tests for engine resolution, readiness polling, spawn retries and the
argument list built for each item.
"""
import asyncio
from pathlib import Path

import pytest
import requests

from mediapull.engine import EngineLauncher, is_transient_launch_error
from mediapull.events import ENGINE_STATUS, ENGINE_UPDATE_AVAILABLE
from mediapull.exceptions import (
    EngineCommandError, EngineLaunchError, EngineNotFoundError, EnginePreparationError
)
from mediapull.jobs import Job, JobFile
from mediapull.retry import RetryPolicy


@pytest.fixture
def events():
    return []


@pytest.fixture
def make_launcher(settings, events):
    async def record(event):
        events.append(event)

    def make(**overrides):
        launcher = EngineLauncher(record, settings.model_copy(update=overrides))
        launcher.READY_POLL_INTERVAL = 0.01
        return launcher
    return make


def statuses(events):
    return [payload['status'] for event_type, payload in events if event_type == ENGINE_STATUS]


def test_transient_launch_errors():
    assert is_transient_launch_error(PermissionError("locked"))
    assert not is_transient_launch_error(FileNotFoundError("gone"))
    assert not is_transient_launch_error(ValueError("nope"))


def test_resolve_engine_missing(make_launcher, tmp_path):
    launcher = make_launcher(engine_path=tmp_path / 'missing' / 'yt-dlp')
    with pytest.raises(EngineNotFoundError):
        launcher.resolve_engine()


def test_resolve_engine_override(make_launcher, fake_engine):
    assert make_launcher().resolve_engine() == fake_engine


def test_resolve_ffmpeg_missing_is_none(make_launcher):
    assert make_launcher().resolve_ffmpeg() is None


def test_network_args(make_launcher, tmp_path):
    launcher = make_launcher(proxy='socks5://127.0.0.1:9050')
    assert launcher.network_args() == ['--proxy', 'socks5://127.0.0.1:9050']

    (tmp_path / 'cookies.txt').write_text('# Netscape HTTP Cookie File\n', encoding='utf-8')
    assert launcher.network_args()[-2:] == ['--cookies', str(tmp_path / 'cookies.txt')]


async def test_wait_until_ready_times_out(make_launcher, tmp_path, events):
    binary = tmp_path / 'not-executable'
    binary.write_text('data', encoding='utf-8')
    binary.chmod(0o644)

    with pytest.raises(EnginePreparationError):
        await make_launcher().wait_until_ready(binary, timeout=0.1)
    seen = statuses(events)
    assert seen[0] == 'retrying'
    assert seen[-1] == 'error'


async def test_wait_until_ready_recovers(make_launcher, tmp_path, events):
    binary = tmp_path / 'becomes-executable'
    binary.write_text('data', encoding='utf-8')
    binary.chmod(0o644)

    async def unlock_later():
        await asyncio.sleep(0.05)
        binary.chmod(0o755)

    unlock = asyncio.create_task(unlock_later())
    await make_launcher().wait_until_ready(binary, timeout=5)
    await unlock
    seen = statuses(events)
    assert 'retrying' in seen
    assert seen[-1] == 'ready'


async def test_wait_until_ready_is_silent_when_ready(make_launcher, fake_engine, events):
    await make_launcher().wait_until_ready(fake_engine)
    assert events == []


async def test_spawn_retries_busy_binary(make_launcher, fake_engine, events, monkeypatch):
    real_exec = asyncio.create_subprocess_exec
    attempts = []

    async def flaky_exec(*args, **kwargs):
        attempts.append(args)
        if len(attempts) < 3:
            raise PermissionError(13, "Text file busy")
        return await real_exec(*args, **kwargs)

    monkeypatch.setattr(asyncio, 'create_subprocess_exec', flaky_exec)
    launcher = make_launcher()
    process = await launcher.spawn_with_retry(fake_engine, ['--version'], RetryPolicy(5, 0.01, linear=True))
    stdout, _ = await process.communicate()

    assert stdout.decode().strip() == '2024.01.01'
    assert len(attempts) == 3
    retry_events = [payload for _, payload in events if payload['status'] == 'retrying']
    assert [(p['attempt'], p['max']) for p in retry_events] == [(1, 5), (2, 5)]
    assert statuses(events)[-1] == 'ready'


async def test_spawn_gives_up(make_launcher, fake_engine, events, monkeypatch):
    attempts = []

    async def locked_exec(*args, **kwargs):
        attempts.append(args)
        raise PermissionError(13, "Permission denied")

    monkeypatch.setattr(asyncio, 'create_subprocess_exec', locked_exec)
    with pytest.raises(EngineLaunchError):
        await make_launcher().spawn_with_retry(fake_engine, [], RetryPolicy(3, 0))
    assert len(attempts) == 3
    assert statuses(events)[-1] == 'error'


async def test_spawn_missing_binary_is_not_retried(make_launcher, tmp_path, monkeypatch):
    attempts = []

    async def missing_exec(*args, **kwargs):
        attempts.append(args)
        raise FileNotFoundError(2, "No such file or directory")

    monkeypatch.setattr(asyncio, 'create_subprocess_exec', missing_exec)
    with pytest.raises(EngineNotFoundError):
        await make_launcher().spawn_with_retry(tmp_path / 'yt-dlp', [], RetryPolicy(5, 0))
    assert len(attempts) == 1


async def test_get_version(make_launcher, fake_engine, tmp_path):
    launcher = make_launcher()
    assert await launcher.get_version(fake_engine) == '2024.01.01'
    assert await launcher.get_version(tmp_path / 'nothing') == 'Not found'
    assert await launcher.get_version(None) == 'Not found'


async def test_fetch_info(make_launcher):
    info = await make_launcher().fetch_info('ok://clip')
    assert info == {'id': 'clip', 'title': 'Title of ok://clip', '_type': 'video'}


@pytest.mark.parametrize("url,timeout", [
    ('fail://clip', 10),
    ('garbage://clip', 10),
    ('hang://clip', 0.5),
])
async def test_fetch_info_errors(make_launcher, url, timeout):
    with pytest.raises(EngineCommandError):
        await make_launcher().fetch_info(url, timeout=timeout)


class FakeReleaseResponse:
    def __init__(self, payload, status_error=None):
        self.payload = payload
        self.status_error = status_error

    def raise_for_status(self):
        if self.status_error is not None:
            raise self.status_error

    def json(self):
        return self.payload


class TestCheckForEngineUpdate:
    """Release lookups against a stubbed HTTP client."""

    async def test_newer_release_is_announced(self, make_launcher, events, monkeypatch):
        monkeypatch.setattr(requests, 'get', lambda *args, **kwargs: FakeReleaseResponse({'tag_name': '2025.01.01'}))
        assert await make_launcher().check_for_engine_update() == '2025.01.01'
        assert (ENGINE_UPDATE_AVAILABLE, {'current': '2024.01.01', 'latest': '2025.01.01'}) in events

    async def test_same_release_is_quiet(self, make_launcher, events, monkeypatch):
        monkeypatch.setattr(requests, 'get', lambda *args, **kwargs: FakeReleaseResponse({'tag_name': '2024.01.01'}))
        assert await make_launcher().check_for_engine_update() is None
        assert not [event for event in events if event[0] == ENGINE_UPDATE_AVAILABLE]

    async def test_network_failure_returns_none(self, make_launcher, events, monkeypatch):
        def offline(*args, **kwargs):
            raise requests.exceptions.ConnectionError("no route to host")

        monkeypatch.setattr(requests, 'get', offline)
        assert await make_launcher().check_for_engine_update() is None
        assert not [event for event in events if event[0] == ENGINE_UPDATE_AVAILABLE]

    async def test_http_error_returns_none(self, make_launcher, monkeypatch):
        error = requests.exceptions.HTTPError("403 rate limited")
        monkeypatch.setattr(requests, 'get', lambda *args, **kwargs: FakeReleaseResponse({}, error))
        assert await make_launcher().check_for_engine_update() is None


class TestBuildEngineArgs:
    """Arguments handed to the engine for one item."""

    @staticmethod
    def job(**kwargs):
        defaults = dict(id='1000-000', playlist_name='batch', format='best', destination_dir='/dl',
                        files=[JobFile('https://example.com/v/1', 'One', 'One.mp4')])
        defaults.update(kwargs)
        return Job(**defaults)

    def build(self, controller, job, ffmpeg=None):
        return controller.supervisor.build_engine_args(job, job.files[0], Path('/dl/.incomplete/One.%(ext)s'), ffmpeg)

    def test_video_defaults(self, controller):
        args = self.build(controller, self.job(parallelism=6))
        assert args[:3] == ['https://example.com/v/1', '-o', '/dl/.incomplete/One.%(ext)s']
        assert args[args.index('--format') + 1] == 'best'
        assert args[args.index('--concurrent-fragments') + 1] == '6'
        for flag in ('--no-playlist', '--newline', '--no-warnings', '--no-mtime'):
            assert flag in args
        assert '--extract-audio' not in args
        assert '--recode-video' not in args
        assert '--ffmpeg-location' not in args

    def test_audio_mp3(self, controller):
        args = self.build(controller, self.job(format='bestaudio'))
        assert args[args.index('--format') + 1] == 'bestaudio/best'
        assert args[args.index('--audio-format') + 1] == 'mp3'
        assert args[args.index('--audio-quality') + 1] == '192K'

    def test_audio_other_container(self, controller):
        args = self.build(controller, self.job(format='bestaudio', target_container='opus'))
        assert args[args.index('--audio-format') + 1] == 'opus'
        assert '--audio-quality' not in args

    def test_video_recode(self, controller):
        args = self.build(controller, self.job(target_container='mkv'))
        assert args[args.index('--recode-video') + 1] == 'mkv'

    def test_ffmpeg_location_is_its_directory(self, controller):
        args = self.build(controller, self.job(), ffmpeg=Path('/opt/ffmpeg/bin/ffmpeg'))
        assert args[args.index('--ffmpeg-location') + 1] == str(Path('/opt/ffmpeg/bin'))

    def test_embedding(self, make_controller):
        controller = make_controller(embed_metadata=True, embed_thumbnail=True)
        args = self.build(controller, self.job())
        assert '--embed-metadata' in args
        assert '--embed-thumbnail' in args

        args = self.build(controller, self.job(target_container='webm'))
        assert '--embed-thumbnail' not in args

    def test_proxy_is_passed_through(self, make_controller):
        args = self.build(make_controller(proxy='http://proxy:3128'), self.job())
        assert args[args.index('--proxy') + 1] == 'http://proxy:3128'
