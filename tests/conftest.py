"""
Shared pytest fixtures for MediaPull tests.

The extraction engine is replaced by a small executable Python script whose
behaviour is chosen by the URL scheme:

    ok://name       prints progress, writes the output, exits 0
    fail://name     prints an error on stderr, exits 1, writes nothing
    salvage://name  writes the output with a different extension, exits 1
    hang://name     prints one progress line, then waits until a `release`
                    file appears next to the script, then behaves like ok://
    thumb://name    writes only a .webp thumbnail, then fails like fail://

With `--dump-single-json` it prints a JSON description instead; there
`fail://` exits 1, `garbage://` prints non-JSON and `hang://` never finishes.
"""
import sys
import asyncio
import inspect
import textwrap
from pathlib import Path

import pytest

# Add project root to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))

from mediapull.config import ConfigManager, Settings
from mediapull.controller import AppController
from mediapull.store import JobStore

FAKE_ENGINE = textwrap.dedent('''\
    #!{python}
    import sys
    import json
    import time
    import pathlib

    here = pathlib.Path(__file__).parent
    args = sys.argv[1:]
    if args and args[0] in ('--version', '-U'):
        print('2024.01.01')
        sys.exit(0)

    url = args[0]
    scheme = url.split('://', 1)[0]
    if '--dump-single-json' in args:
        if scheme == 'fail':
            print('ERROR: [generic] Unsupported URL: ' + url, file=sys.stderr)
            sys.exit(1)
        if scheme == 'hang':
            time.sleep(60)
        if scheme == 'garbage':
            print('not json')
            sys.exit(0)
        print(json.dumps({'id': url.split('://', 1)[1], 'title': 'Title of ' + url, '_type': 'video'}))
        sys.exit(0)

    template = args[args.index('-o') + 1]
    with open(here / 'calls.log', 'a', encoding='utf-8') as log:
        log.write(url + '\\n')

    ext = 'mp3' if '--extract-audio' in args else 'mp4'
    out = pathlib.Path(template.replace('%(ext)s', ext))
    part = out.with_name(out.name + '.part')

    if scheme == 'thumb':
        out.with_suffix('.webp').write_bytes(b'thumbnail')

    if scheme in ('fail', 'thumb'):
        print('ERROR: [generic] Video unavailable', file=sys.stderr)
        sys.exit(1)

    if scheme == 'hang' and not (here / 'release').exists():
        part.write_bytes(b'partial')
        print('[download]   5.0% of 10.00MiB at 1.00MiB/s ETA 00:09', flush=True)
        while not (here / 'release').exists():
            time.sleep(0.05)

    print('[download] Destination: ' + str(out), flush=True)
    for pct in (10.0, 55.5, 100.0):
        print('[download] %5.1f%% of 10.00MiB at 2.00MiB/s ETA 00:01' % pct, flush=True)
    if part.exists():
        part.unlink()

    if scheme == 'salvage':
        out.with_suffix('.mkv').write_bytes(b'salvaged-bytes')
        print('ERROR: Postprocessing: Conversion failed!', file=sys.stderr)
        sys.exit(1)

    out.write_bytes(b'media-bytes')
    sys.exit(0)
''')


@pytest.hookimpl(tryfirst=True)
def pytest_pyfunc_call(pyfuncitem):
    """Runs `async def` tests to completion on a fresh event loop."""
    if not inspect.iscoroutinefunction(pyfuncitem.obj):
        return None
    kwargs = {name: pyfuncitem.funcargs[name] for name in pyfuncitem._fixtureinfo.argnames}
    asyncio.run(pyfuncitem.obj(**kwargs))
    return True


@pytest.fixture
def engine_dir(tmp_path):
    directory = tmp_path / 'engine'
    directory.mkdir()
    return directory


@pytest.fixture
def fake_engine(engine_dir):
    """An executable stand-in for yt-dlp."""
    script = engine_dir / 'yt-dlp'
    script.write_text(FAKE_ENGINE.replace('{python}', sys.executable), encoding='utf-8')
    script.chmod(0o755)
    return script


@pytest.fixture
def engine_calls(engine_dir):
    """Returns a function listing the URLs the fake engine was started with."""
    def read():
        log = engine_dir / 'calls.log'
        if not log.exists():
            return []
        return log.read_text(encoding='utf-8').split()
    return read


@pytest.fixture
def release_engine(engine_dir):
    """Returns a function that lets hanging fake downloads finish."""
    def release():
        (engine_dir / 'release').touch()
    return release


@pytest.fixture
def settings(tmp_path, fake_engine):
    return Settings(
        downloads_root=tmp_path / 'downloads',
        engine_path=fake_engine,
        ffmpeg_path=tmp_path / 'no-ffmpeg',
        cookie_file=tmp_path / 'cookies.txt',
        embed_metadata=False,
        engine_ready_timeout=5,
        spawn_backoff=0.01,
        move_backoff=0.01,
    )


@pytest.fixture
def store(tmp_path):
    job_store = JobStore(tmp_path / 'jobs.db')
    yield job_store
    job_store.close()


@pytest.fixture
def make_controller(tmp_path, settings):
    """Builds controllers sharing one database, like successive app starts."""
    controllers = []

    def make(**overrides):
        config = settings.model_copy(update=overrides)
        controller = AppController(
            ConfigManager(tmp_path / 'config.json'), config,
            store=JobStore(tmp_path / 'jobs.db'),
            legacy_jobs_file=tmp_path / 'jobs.json',
        )
        controllers.append(controller)
        return controller

    yield make
    for controller in controllers:
        controller.store.close()


@pytest.fixture
def controller(make_controller):
    return make_controller()


async def wait_until(predicate, timeout: float = 10.0, interval: float = 0.02):
    """Polls `predicate` on the running loop until it is true."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(interval)
