"""
Segment recorder tests: episode bracketing, merging, failures and shutdown.
"""

import logging
import os

from watchpost.config import AppConfig
from watchpost.frames import MotionState
from watchpost.recorder import PARTIAL_SUFFIX, RecorderState, SegmentRecorder, lead_frame_count

from conftest import FPS, FakeWriterFactory, detected

ACTIVE = MotionState.ACTIVE
IDLE = MotionState.IDLE


def make_recorder(directory, factory, lead_frames=3, trail_frames=3, fmt="%Y%m%d_%H%M%S"):
    return SegmentRecorder(
        directory=str(directory),
        filename_format=fmt,
        writer_factory=factory,
        lead_frames=lead_frames,
        trail_seconds=trail_frames / FPS,
    )


def feed(recorder, count, events=None):
    events = events or {}
    for i in range(count):
        recorder.handle(detected(i, events.get(i)))


class TestLeadFrameCount:

    def test_rounds_up(self):
        assert lead_frame_count(1.0, 30) == 30
        assert lead_frame_count(0.5, 25) == 13

    def test_disabled(self):
        assert lead_frame_count(0, 30) == 0
        assert lead_frame_count(1.0, 0) == 0


class TestSegmentRecorder:

    def test_idle_stream_writes_nothing(self, recordings_dir, writer_factory):
        recorder = make_recorder(recordings_dir, writer_factory)
        feed(recorder, 50)
        assert writer_factory.writers == []
        assert recorder.state is RecorderState.IDLE
        assert os.listdir(recordings_dir) == []

    def test_episode_is_bracketed_by_lead_and_trail(self, recordings_dir, writer_factory):
        recorder = make_recorder(recordings_dir, writer_factory)
        feed(recorder, 40, {10: ACTIVE, 20: IDLE})

        assert len(writer_factory.writers) == 1
        writer = writer_factory.writers[0]
        assert writer.frames == list(range(7, 24))
        assert writer.closed
        assert recorder.state is RecorderState.IDLE

        assert len(recorder.completed) == 1
        final = recorder.completed[0]
        assert os.path.exists(final)
        assert not os.path.exists(final + PARTIAL_SUFFIX)
        assert os.path.getsize(final) == len(writer.frames)

    def test_segment_named_from_episode_start(self, recordings_dir, writer_factory):
        recorder = make_recorder(recordings_dir, writer_factory, fmt="motion_%H-%M-%S")
        feed(recorder, 40, {10: ACTIVE, 20: IDLE})
        # frame 10 is 0.3125s after 03:04:05
        assert os.path.basename(recorder.completed[0]) == "motion_03-04-05.mkv"

    def test_name_collision_gets_suffix(self, recordings_dir, writer_factory):
        (recordings_dir / "motion.mkv").write_bytes(b"old")
        recorder = make_recorder(recordings_dir, writer_factory, fmt="motion")
        feed(recorder, 40, {10: ACTIVE, 20: IDLE})
        assert os.path.basename(recorder.completed[0]) == "motion_1.mkv"
        assert (recordings_dir / "motion.mkv").read_bytes() == b"old"

    def test_file_is_partial_while_recording(self, recordings_dir, writer_factory):
        recorder = make_recorder(recordings_dir, writer_factory)
        feed(recorder, 15, {10: ACTIVE})
        segment = recorder.segment
        assert recorder.state is RecorderState.RECORDING
        assert segment.path.endswith(PARTIAL_SUFFIX)
        assert os.path.exists(segment.path)
        assert not os.path.exists(segment.final_path)

    def test_motion_during_finalizing_merges_segments(self, recordings_dir, writer_factory):
        recorder = make_recorder(recordings_dir, writer_factory)
        feed(recorder, 50, {10: ACTIVE, 20: IDLE, 22: ACTIVE, 30: IDLE})

        assert len(writer_factory.writers) == 1
        assert writer_factory.writers[0].frames == list(range(7, 34))
        assert len(recorder.completed) == 1

    def test_separate_episodes_produce_separate_segments(self, recordings_dir, writer_factory):
        recorder = make_recorder(recordings_dir, writer_factory, fmt="seg_%S_%f")
        feed(recorder, 80, {10: ACTIVE, 20: IDLE, 50: ACTIVE, 60: IDLE})

        assert len(writer_factory.writers) == 2
        assert writer_factory.writers[0].frames == list(range(7, 24))
        assert writer_factory.writers[1].frames == list(range(47, 64))
        assert len(set(recorder.completed)) == 2

    def test_lead_buffer_shorter_than_history(self, recordings_dir, writer_factory):
        recorder = make_recorder(recordings_dir, writer_factory, lead_frames=5)
        feed(recorder, 30, {2: ACTIVE, 10: IDLE})
        assert writer_factory.writers[0].frames[0] == 0

    def test_frame_count_covers_episode_lead_and_trail(self, recordings_dir, writer_factory):
        lead, trail = 32, 64
        recorder = make_recorder(recordings_dir, writer_factory, lead_frames=lead, trail_frames=trail)
        feed(recorder, 600, {304: ACTIVE, 364: IDLE})

        frames = writer_factory.writers[0].frames
        episode = 364 - 304
        assert len(frames) >= episode + lead + trail
        assert len(frames) <= episode + lead + trail + 1
        assert frames == list(range(frames[0], frames[-1] + 1))

    def test_write_failure_aborts_only_current_segment(self, recordings_dir):
        factory = FakeWriterFactory(fail_after=5)
        recorder = make_recorder(recordings_dir, factory)
        feed(recorder, 80, {10: ACTIVE, 20: IDLE, 50: ACTIVE, 60: IDLE})

        assert recorder.failed == 2
        assert recorder.state is RecorderState.IDLE
        assert [w.frames for w in factory.writers] == [list(range(7, 12)), list(range(47, 52))]
        assert all(w.closed for w in factory.writers)
        # Truncated footage is kept under its final name
        for path in recorder.completed:
            assert os.path.exists(path)
            assert not os.path.exists(path + PARTIAL_SUFFIX)

    def test_writer_open_failure_keeps_recorder_idle(self, recordings_dir):
        def failing_factory(path, first_frame):
            raise OSError("Permission denied")

        recorder = make_recorder(recordings_dir, failing_factory)
        feed(recorder, 30, {10: ACTIVE, 20: IDLE})
        assert recorder.state is RecorderState.IDLE
        assert recorder.failed == 1
        assert recorder.completed == []

    def test_close_finalizes_open_segment(self, recordings_dir, writer_factory):
        recorder = make_recorder(recordings_dir, writer_factory)
        feed(recorder, 15, {10: ACTIVE})
        recorder.close()

        assert recorder.state is RecorderState.IDLE
        assert writer_factory.writers[0].closed
        assert len(recorder.completed) == 1
        assert os.path.exists(recorder.completed[0])

        recorder.close()
        assert len(recorder.completed) == 1


class TestRecoverableErrorLogging:

    def test_write_failure_is_logged(self, recordings_dir, caplog):
        caplog.set_level(AppConfig(quiet=False, verbose=False).log_level)
        recorder = make_recorder(recordings_dir, FakeWriterFactory(fail_after=2))
        feed(recorder, 30, {10: ACTIVE, 20: IDLE})
        assert any(
            r.levelno == logging.WARNING and "aborting segment" in r.getMessage() for r in caplog.records
        )

    def test_write_failure_is_silent_when_quiet(self, recordings_dir, caplog):
        caplog.set_level(AppConfig(quiet=True).log_level)
        recorder = make_recorder(recordings_dir, FakeWriterFactory(fail_after=2))
        feed(recorder, 30, {10: ACTIVE, 20: IDLE})
        assert recorder.failed == 1
        assert caplog.records == []
