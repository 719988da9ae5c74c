"""Tests for the ffmpeg wrapper and binary discovery."""

import json
import os
import signal
import subprocess
import threading
import pytest
from pathlib import Path
from unittest.mock import Mock, patch

from wordclip.errors import ClipCutFailed, TrackExtractionFailed
from wordclip.ffmpeg import (
    FFmpegNotFoundError,
    FFmpegWrapper,
    InvalidMediaError,
    parse_ffmpeg_banner,
    parse_ffprobe_output,
    partial_path,
)
from wordclip.ffmpeg_binary import (
    FFmpegConfig,
    get_dependency_report,
    get_ffmpeg_path,
    get_ffprobe_path,
    verify_ffmpeg,
)

BANNER = """Input #0, mov,mp4,m4a,3gp,3g2,mj2, from 'talk.mp4':
  Duration: 01:02:03.50, start: 0.000000, bitrate: 2000 kb/s
  Stream #0:0[0x1](und): Video: h264 (High), yuv420p, 1920x1080, 30 fps
  Stream #0:1[0x2](eng): Audio: aac (LC), 48000 Hz, stereo, fltp, 128 kb/s
  Stream #0:2[0x3](eng): Audio: aac (LC), 48000 Hz, mono, fltp, 96 kb/s
At least one output file must be specified
"""


def mock_process(returncode=0, stdout="", stderr=""):
    """Build a Popen stand-in."""
    proc = Mock()
    proc.pid = 4242
    proc.returncode = returncode
    proc.poll.return_value = returncode
    proc.communicate.return_value = (stdout, stderr)
    return proc


def popen_running(action, proc=None):
    """Patchable Popen whose process runs `action` on its command line."""
    proc = proc or mock_process()

    def popen(cmd, **kwargs):
        def communicate(timeout=None):
            action(cmd)
            return proc.communicate.return_value

        proc.communicate.side_effect = communicate
        return proc

    return popen


@pytest.fixture
def wrapper():
    with patch("wordclip.ffmpeg.get_ffmpeg_path", return_value="/usr/bin/ffmpeg"), patch(
        "wordclip.ffmpeg.get_ffprobe_path", return_value="/usr/bin/ffprobe"
    ):
        yield FFmpegWrapper()


class TestParsers:
    """Tests for probe output parsing."""

    def test_ffprobe_output(self):
        """Test audio streams and duration are read."""
        stdout = json.dumps(
            {
                "format": {"duration": "123.450000"},
                "streams": [
                    {"codec_type": "video"},
                    {"codec_type": "audio"},
                    {"codec_type": "audio"},
                ],
            }
        )

        info = parse_ffprobe_output(stdout)

        assert info.duration == pytest.approx(123.45)
        assert info.audio_streams == 2

    def test_ffprobe_stream_duration_fallback(self):
        """Test stream durations are used when the container has none."""
        stdout = json.dumps(
            {
                "format": {},
                "streams": [
                    {"codec_type": "audio", "duration": "10.0"},
                    {"codec_type": "video", "duration": "12.5"},
                ],
            }
        )

        assert parse_ffprobe_output(stdout).duration == 12.5

    def test_ffprobe_unknown_duration(self):
        """Test a missing duration stays unknown."""
        info = parse_ffprobe_output(json.dumps({"format": {"duration": "N/A"}, "streams": []}))

        assert info.duration is None
        assert info.audio_streams == 0

    def test_ffprobe_invalid_json(self):
        """Test garbage output raises InvalidMediaError."""
        with pytest.raises(InvalidMediaError):
            parse_ffprobe_output("not json")

    def test_banner(self):
        """Test the ffmpeg banner is parsed."""
        info = parse_ffmpeg_banner(BANNER)

        assert info.duration == pytest.approx(3723.5)
        assert info.audio_streams == 2

    def test_banner_without_input(self):
        """Test an unreadable input raises InvalidMediaError."""
        with pytest.raises(InvalidMediaError):
            parse_ffmpeg_banner("talk.mp4: Invalid data found when processing input")

    def test_partial_path(self):
        """Test partial files are hidden next to the output."""
        assert partial_path(Path("/out/clip_1_talk.mp4")) == Path("/out/.clip_1_talk.partial.mp4")


class TestFFmpegWrapperInit:
    """Tests for FFmpegWrapper construction."""

    def test_missing_ffmpeg(self):
        """Test a missing ffmpeg raises FFmpegNotFoundError."""
        with patch("wordclip.ffmpeg.get_ffmpeg_path", return_value=None), patch(
            "wordclip.ffmpeg.get_ffprobe_path", return_value=None
        ):
            with pytest.raises(FFmpegNotFoundError):
                FFmpegWrapper()

    def test_paths(self, wrapper):
        """Test resolved executables are exposed."""
        assert wrapper.ffmpeg_path == "/usr/bin/ffmpeg"
        assert wrapper.ffprobe_path == "/usr/bin/ffprobe"


class TestProbe:
    """Tests for FFmpegWrapper.probe."""

    def test_probe_with_ffprobe(self, wrapper, tmp_path):
        """Test probing through ffprobe."""
        media = tmp_path / "talk.mp4"
        media.touch()
        stdout = json.dumps({"format": {"duration": "60"}, "streams": [{"codec_type": "audio"}]})

        with patch("wordclip.ffmpeg.subprocess.Popen", return_value=mock_process(stdout=stdout)) as mock_popen:
            info = wrapper.probe(media)

        assert info.duration == 60
        assert info.audio_streams == 1
        cmd = mock_popen.call_args[0][0]
        assert cmd[0] == "/usr/bin/ffprobe"
        assert "-show_streams" in cmd
        assert mock_popen.call_args[1]["start_new_session"] == (os.name == "posix")

    def test_probe_without_ffprobe(self, wrapper, tmp_path):
        """Test probing falls back to the ffmpeg banner."""
        media = tmp_path / "talk.mp4"
        media.touch()
        wrapper._ffprobe_path = None

        with patch("wordclip.ffmpeg.subprocess.Popen", return_value=mock_process(returncode=1, stderr=BANNER)):
            info = wrapper.probe(media)

        assert info.audio_streams == 2

    def test_probe_missing_file(self, wrapper, tmp_path):
        """Test a missing input raises InvalidMediaError."""
        with pytest.raises(InvalidMediaError):
            wrapper.probe(tmp_path / "missing.mp4")

    def test_probe_failure(self, wrapper, tmp_path):
        """Test an ffprobe error raises InvalidMediaError."""
        media = tmp_path / "talk.mp4"
        media.touch()

        with patch("wordclip.ffmpeg.subprocess.Popen", return_value=mock_process(returncode=1, stderr="moov atom not found")):
            with pytest.raises(InvalidMediaError, match="moov atom"):
                wrapper.probe(media)


class TestExtract:
    """Tests for audio extraction."""

    def test_extract_args(self, wrapper, tmp_path):
        """Test tracks are 1-based and converted to 16 kHz mono WAV."""
        cmd = wrapper.build_extract_args(tmp_path / "talk.mp4", 2, tmp_path / "out.wav")

        assert cmd[cmd.index("-map") + 1] == "0:a:1"
        assert cmd[cmd.index("-ar") + 1] == "16000"
        assert cmd[cmd.index("-ac") + 1] == "1"
        assert cmd[cmd.index("-acodec") + 1] == "pcm_s16le"
        assert cmd[-1] == str(tmp_path / "out.wav")

    def test_extract(self, wrapper, tmp_path):
        """Test one WAV is written per track."""
        popen = popen_running(lambda cmd: Path(cmd[-1]).write_bytes(b"RIFF"))

        with patch("wordclip.ffmpeg.subprocess.Popen", side_effect=popen):
            extracted = wrapper.extract(tmp_path / "talk.mp4", [1, 2], tmp_path / "audio")

        assert extracted == {
            1: tmp_path / "audio" / "talk_track1.wav",
            2: tmp_path / "audio" / "talk_track2.wav",
        }
        assert all(path.exists() for path in extracted.values())

    def test_extract_failure(self, wrapper, tmp_path):
        """Test a non-zero exit raises TrackExtractionFailed."""
        proc = mock_process(returncode=1, stderr="Stream map '0:a:4' matches no streams.")

        with patch("wordclip.ffmpeg.subprocess.Popen", return_value=proc):
            with pytest.raises(TrackExtractionFailed, match="matches no streams"):
                wrapper.extract_track(tmp_path / "talk.mp4", 5, tmp_path / "out.wav")

    def test_extract_empty_output(self, wrapper, tmp_path):
        """Test an empty output file counts as a failure."""
        popen = popen_running(lambda cmd: Path(cmd[-1]).write_bytes(b""))

        with patch("wordclip.ffmpeg.subprocess.Popen", side_effect=popen):
            with pytest.raises(TrackExtractionFailed, match="no audio"):
                wrapper.extract_track(tmp_path / "talk.mp4", 1, tmp_path / "out.wav")

        assert not (tmp_path / "out.wav").exists()


class TestCut:
    """Tests for clip cutting."""

    def test_cut_args(self, wrapper, tmp_path):
        """Test clips are stream-copied with seek before input."""
        cmd = wrapper.build_cut_args(tmp_path / "talk.mp4", 48, 69, tmp_path / "clip.mp4")

        assert cmd.index("-ss") < cmd.index("-i")
        assert cmd[cmd.index("-ss") + 1] == "48.000"
        assert cmd[cmd.index("-t") + 1] == "21.000"
        assert cmd[cmd.index("-c:v") + 1] == "copy"
        assert cmd[cmd.index("-c:a") + 1] == "copy"

    def test_cut_renames_partial(self, wrapper, tmp_path):
        """Test the clip appears only after ffmpeg succeeds."""
        output = tmp_path / "out" / "clip_1_talk.mp4"
        written = []

        def write(cmd):
            written.append(Path(cmd[-1]))
            Path(cmd[-1]).write_bytes(b"clip")

        with patch("wordclip.ffmpeg.subprocess.Popen", side_effect=popen_running(write)):
            wrapper.cut(tmp_path / "talk.mp4", 48, 69, output)

        assert written == [partial_path(output)]
        assert output.read_bytes() == b"clip"
        assert not partial_path(output).exists()

    def test_cut_failure(self, wrapper, tmp_path):
        """Test a failed cut leaves nothing behind."""
        output = tmp_path / "clip_1_talk.mp4"
        proc = mock_process(returncode=1, stderr="Invalid argument")

        with patch("wordclip.ffmpeg.subprocess.Popen", return_value=proc):
            with pytest.raises(ClipCutFailed, match="Invalid argument"):
                wrapper.cut(tmp_path / "talk.mp4", 0, 10, output)

        assert not output.exists()
        assert not partial_path(output).exists()

    def test_cut_empty_range(self, wrapper, tmp_path):
        """Test an empty range is rejected before running ffmpeg."""
        with patch("wordclip.ffmpeg.subprocess.Popen") as mock_popen:
            with pytest.raises(ClipCutFailed):
                wrapper.cut(tmp_path / "talk.mp4", 10, 10, tmp_path / "clip.mp4")

        mock_popen.assert_not_called()

    @pytest.mark.skipif(os.name != "posix", reason="process groups are POSIX only")
    def test_cut_timeout_kills_process_group(self, wrapper, tmp_path):
        """Test a hung ffmpeg is killed and reported."""
        proc = mock_process()
        proc.poll.return_value = None
        proc.communicate.side_effect = [subprocess.TimeoutExpired("ffmpeg", 1), ("", "")]

        with patch("wordclip.ffmpeg.subprocess.Popen", return_value=proc), patch(
            "wordclip.ffmpeg.os.killpg"
        ) as mock_killpg:
            with pytest.raises(ClipCutFailed, match="timed out"):
                wrapper.cut(tmp_path / "talk.mp4", 0, 10, tmp_path / "clip.mp4")

        mock_killpg.assert_called_once_with(4242, signal.SIGKILL)
        assert wrapper._processes == set()


class TestTerminateAll:
    """Tests for killing live processes."""

    @pytest.mark.skipif(os.name != "posix", reason="process groups are POSIX only")
    def test_terminate_all(self, wrapper):
        """Test every tracked process group is killed."""
        running = mock_process()
        running.poll.return_value = None
        finished = mock_process()
        wrapper._processes.update({running, finished})

        with patch("wordclip.ffmpeg.os.killpg") as mock_killpg:
            wrapper.terminate_all()

        mock_killpg.assert_called_once_with(4242, signal.SIGKILL)

    @pytest.mark.skipif(os.name != "posix", reason="process groups are POSIX only")
    def test_terminate_all_while_lock_held(self, wrapper):
        """Test a Ctrl-C arriving while a subprocess is being registered does not hang."""
        running = mock_process()
        running.poll.return_value = None
        wrapper._processes.add(running)
        finished = threading.Event()

        def interrupted():
            with wrapper._lock:
                wrapper.terminate_all()
            finished.set()

        with patch("wordclip.ffmpeg.os.killpg") as mock_killpg:
            worker = threading.Thread(target=interrupted, daemon=True)
            worker.start()
            worker.join(timeout=5)

        assert finished.is_set()
        mock_killpg.assert_called_once_with(4242, signal.SIGKILL)


class TestBinaryDiscovery:
    """Tests for ffmpeg_binary."""

    def test_custom_path_wins(self, tmp_path):
        """Test an existing configured path is used."""
        custom = tmp_path / "ffmpeg"
        custom.touch()

        assert get_ffmpeg_path(FFmpegConfig(ffmpeg_path=str(custom))) == str(custom)

    def test_imageio_fallback(self):
        """Test the bundled binary is used by default."""
        with patch("wordclip.ffmpeg_binary.imageio_ffmpeg.get_ffmpeg_exe", return_value="/bundled/ffmpeg"):
            assert get_ffmpeg_path() == "/bundled/ffmpeg"

    def test_prefer_system(self):
        """Test prefer_system picks the PATH binary first."""
        with patch("wordclip.ffmpeg_binary.shutil.which", return_value="/usr/bin/ffmpeg"):
            assert get_ffmpeg_path(FFmpegConfig(prefer_system=True)) == "/usr/bin/ffmpeg"

    def test_not_found(self):
        """Test None when nothing is installed."""
        with patch("wordclip.ffmpeg_binary.shutil.which", return_value=None), patch(
            "wordclip.ffmpeg_binary.imageio_ffmpeg.get_ffmpeg_exe", side_effect=RuntimeError("no binary")
        ):
            assert get_ffmpeg_path() is None
            assert get_ffprobe_path() is None
            assert verify_ffmpeg()[0] is False

    def test_ffprobe_next_to_ffmpeg(self, tmp_path):
        """Test ffprobe is found beside a custom ffmpeg."""
        (tmp_path / "ffmpeg").touch()
        (tmp_path / "ffprobe").touch()

        with patch("wordclip.ffmpeg_binary.shutil.which", return_value=None), patch(
            "wordclip.ffmpeg_binary.platform.system", return_value="Linux"
        ):
            path = get_ffprobe_path(FFmpegConfig(ffmpeg_path=str(tmp_path / "ffmpeg")))

        assert path == str(tmp_path / "ffprobe")

    def test_verify_reports_version(self):
        """Test a working ffmpeg reports its version."""
        result = Mock(returncode=0, stdout="ffmpeg version 6.1.1 Copyright (c) 2000-2023\n")

        with patch("wordclip.ffmpeg_binary.imageio_ffmpeg.get_ffmpeg_exe", return_value="/bundled/ffmpeg"), patch(
            "wordclip.ffmpeg_binary.subprocess.run", return_value=result
        ):
            ok, message = verify_ffmpeg()

        assert ok
        assert "6.1.1" in message

    def test_dependency_report_keys(self):
        """Test the report covers every component."""
        with patch("wordclip.ffmpeg_binary.imageio_ffmpeg.get_ffmpeg_exe", return_value="/bundled/ffmpeg"), patch(
            "wordclip.ffmpeg_binary.subprocess.run", return_value=Mock(returncode=0, stdout="ffmpeg version 6.1\n")
        ), patch("wordclip.ffmpeg_binary.shutil.which", return_value=None):
            report = get_dependency_report()

        assert set(report) == {"ffmpeg", "ffprobe", "imageio_ffmpeg", "platform"}
        assert report["ffmpeg"]["source"] == "imageio"
