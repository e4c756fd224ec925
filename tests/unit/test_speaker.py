"""Unit tests for announcement backends."""

import logging
from unittest.mock import patch

from mower.control.speaker import Announcement, AudioFileSpeaker, LoggingSpeaker, RecordingSpeaker


class TestBackends:
    """Tests for logging and recording speakers."""

    def test_logging_speaker_logs_name(self, caplog):
        with caplog.at_level(logging.INFO, logger="mower.control.speaker"):
            LoggingSpeaker().say(Announcement.HIGH_TEMP)
        assert "high_temp" in caplog.text

    def test_recording_speaker_keeps_order(self):
        speaker = RecordingSpeaker()
        speaker.say(Announcement.START_MOWING)
        speaker.say(Announcement.CLOSE_TO_CONE)
        assert speaker.spoken == [Announcement.START_MOWING, Announcement.CLOSE_TO_CONE]


class TestAudioFileSpeaker:
    """Tests for clip playback through an external player."""

    def test_plays_clip(self, tmp_path):
        clip = tmp_path / "bumped.mp3"
        clip.write_bytes(b"")

        with patch("mower.control.speaker.subprocess.Popen") as popen:
            AudioFileSpeaker(str(tmp_path)).say(Announcement.BUMPED)

        popen.assert_called_once()
        assert popen.call_args.args[0] == ["mpg123", "-q", str(clip)]

    def test_missing_clip_skipped(self, tmp_path):
        with patch("mower.control.speaker.subprocess.Popen") as popen:
            AudioFileSpeaker(str(tmp_path)).say(Announcement.HIGH_TEMP)
        popen.assert_not_called()

    def test_new_clip_cuts_previous(self, tmp_path):
        for name in ("bumped", "high_temp"):
            (tmp_path / f"{name}.mp3").write_bytes(b"")
        speaker = AudioFileSpeaker(str(tmp_path))

        with patch("mower.control.speaker.subprocess.Popen") as popen:
            popen.return_value.poll.return_value = None
            speaker.say(Announcement.BUMPED)
            speaker.say(Announcement.HIGH_TEMP)

        assert popen.call_count == 2
        popen.return_value.terminate.assert_called_once()
