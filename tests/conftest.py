import os
import stat
import sys
import textwrap
import pytest
import yaml
from pathlib import Path
from mbc.config.models import AppConfig
from mbc.domain.models import MediaMetadata, SourceFile, FileStatus
from mbc.infrastructure.event_bus import EventBus

# ============================================================================
# Configuration Fixtures
# ============================================================================

@pytest.fixture
def sample_config():
    """Returns a sample AppConfig object for testing."""
    return AppConfig(
        general={
            "conversion_jobs": 2,
            "probe_jobs": 2,
            "probe_timeout_s": 15,
            "extensions": [".mp4", ".mkv", ".wav"],
            "output_extension": ".mp4",
            "on_error": "continue",
            "clamp_progress": True,
            "debug": False,
        },
    )


@pytest.fixture
def config_yaml_path(tmp_path):
    """Creates a temporary YAML config file."""
    conf_dir = tmp_path / "conf"
    conf_dir.mkdir()
    conf_file = conf_dir / "mbc.yaml"

    content = {
        'general': {
            'conversion_jobs': 3,
            'probe_timeout_s': 10,
            'extensions': ['mp4', 'MKV'],
            'on_error': 'cancel',
            'clamp_progress': False,
        },
        'encoder': {
            'crf': 20,
            'audio_bitrate': '128k',
        },
        'tools': {
            'ffmpeg_path': '/opt/ffmpeg/bin/ffmpeg',
        },
        'output_dir': '/tmp/mbc_out',
    }

    with open(conf_file, 'w') as f:
        yaml.dump(content, f)

    return conf_file

# ============================================================================
# EventBus Fixtures
# ============================================================================

@pytest.fixture
def event_bus():
    """Returns a fresh EventBus instance."""
    return EventBus()

# ============================================================================
# Domain Fixtures
# ============================================================================

@pytest.fixture
def av_metadata():
    """Metadata of a 10 second file with video and audio."""
    return MediaMetadata(
        container="mov,mp4,m4a,3gp,3g2,mj2",
        duration_seconds=10.0,
        duration_label="00:00:10",
        video_codec="h264",
        audio_codec="aac",
    )


@pytest.fixture
def make_source(av_metadata):
    """Factory for READY SourceFile objects."""
    def _make(path, metadata=None, status=FileStatus.READY):
        return SourceFile(path=Path(path), status=status, metadata=metadata or av_metadata)
    return _make

# ============================================================================
# File System Fixtures
# ============================================================================

@pytest.fixture
def test_input_dir(tmp_path):
    """Creates a test input directory."""
    input_dir = tmp_path / "input"
    input_dir.mkdir()
    return input_dir


@pytest.fixture
def test_output_dir(tmp_path):
    """Output directory path (not created)."""
    return tmp_path / "converted"


@pytest.fixture
def dummy_media_files(test_input_dir):
    """Creates dummy media files in test input directory."""
    files = []

    for i in range(3):
        f = test_input_dir / f"video{i}.mp4"
        f.write_bytes(b"dummy media content " * 100)
        files.append(f)

    # A supported audio file and an unsupported one
    audio = test_input_dir / "track.wav"
    audio.write_bytes(b"RIFF" + b"\x00" * 64)
    files.append(audio)
    (test_input_dir / "notes.txt").write_text("not media")

    # Create a subdirectory with a file
    subdir = test_input_dir / "subdir"
    subdir.mkdir()
    f = subdir / "clip.MKV"
    f.write_bytes(b"dummy media content " * 100)
    files.append(f)

    return files

# ============================================================================
# Fake ffmpeg (integration tests, POSIX only)
# ============================================================================

FAKE_FFMPEG = """\
    #!{python}
    # Stand-in for ffmpeg: prints progress to stderr, honours FAKE_FFMPEG_MODE.
    import os, sys, time
    mode = os.environ.get("FAKE_FFMPEG_MODE", "ok")
    out = sys.argv[-1]
    sys.stderr.write("Input #0, mov,mp4, from 'x':\\n")
    if mode == "fail":
        sys.stderr.write("Error while decoding stream #0:0\\n")
        sys.stderr.flush()
        sys.exit(1)
    if mode == "hang":
        # Child in the same process group must die with its parent
        import subprocess
        child = subprocess.Popen([sys.executable, "-c", "import time; time.sleep(60)"])
        with open(out + ".childpid", "w") as f:
            f.write(str(child.pid))
        sys.stderr.write("frame=    1 fps=0.0 q=0.0 size=0kB time=00:00:00.00 speed=0x\\n")
        sys.stderr.flush()
        time.sleep(60)
        sys.exit(0)
    with open(out, "wb") as f:
        f.write(b"converted")
    for ms in (2500000, 5000000, 10000000):
        sys.stderr.write("out_time_ms=%d\\n" % ms)
        sys.stderr.write("frame=   10 fps=25 q=28.0 size=1kB time=00:00:05.00 speed=2.0x\\n")
        sys.stderr.flush()
        time.sleep(0.01)
    sys.exit(0)
"""


@pytest.fixture
def fake_ffmpeg(tmp_path):
    """Executable script standing in for ffmpeg."""
    if sys.platform == "win32":
        pytest.skip("Fake ffmpeg script requires a POSIX shebang")
    script = tmp_path / "fake_ffmpeg"
    script.write_text(textwrap.dedent(FAKE_FFMPEG).format(python=sys.executable))
    script.chmod(script.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
    return script


@pytest.fixture
def fake_ffmpeg_mode(monkeypatch):
    def _set(mode: str):
        monkeypatch.setenv("FAKE_FFMPEG_MODE", mode)
    return _set

# ============================================================================
# Markers
# ============================================================================

def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line(
        "markers", "slow: marks tests as slow (real subprocesses)"
    )
    config.addinivalue_line(
        "markers", "integration: marks tests as integration tests"
    )
    config.addinivalue_line(
        "markers", "unit: marks tests as unit tests"
    )
    config.addinivalue_line(
        "markers", "posix: requires process groups (skipped on Windows)"
    )


def pytest_collection_modifyitems(config, items):
    if os.name != "nt":
        return
    skip = pytest.mark.skip(reason="POSIX only")
    for item in items:
        if "posix" in item.keywords:
            item.add_marker(skip)
