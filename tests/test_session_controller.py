from __future__ import annotations

import unittest
from typing import Optional

from config_utils import SegmentationConfig
from errors import RecognitionError
from fakes import FakeRecognizer, FakeTimerScheduler
from session_controller import SessionController
from transcript_models import ProgressEvent, TranscriptToken, Utterance


class _Harness:
    def __init__(self, config: Optional[SegmentationConfig] = None, with_error_handler: bool = True) -> None:
        self.clock = FakeTimerScheduler(start=100.0)
        self.recognizer = FakeRecognizer(self.clock)
        self.utterances: list[Utterance] = []
        self.progress: list[ProgressEvent] = []
        self.errors: list[RecognitionError] = []
        self.switches: list[tuple[str, str]] = []
        self.controller = SessionController(
            self.recognizer,
            self.clock,
            config=config or SegmentationConfig(),
            on_interim_progress=self.progress.append,
            on_utterance_finalized=self.utterances.append,
            on_error=self.errors.append if with_error_handler else None,
            on_language_switch=lambda old, new: self.switches.append((old, new)),
        )

    def texts(self) -> list[tuple[str, str, str]]:
        return [(u.text, u.language, u.reason) for u in self.utterances]


class StartStopTests(unittest.TestCase):
    def test_start_sets_first_language_active_and_starts_recognizer(self) -> None:
        h = _Harness()
        h.controller.start("vi", "ja")
        self.assertTrue(h.controller.is_listening)
        self.assertEqual(h.controller.active_language, "vi")
        self.assertEqual(h.controller.languages, ("vi", "ja"))
        self.assertEqual(h.recognizer.start_calls, ["vi-VN"])
        self.assertIsNone(h.controller.state.last_switch_time)

    def test_start_rejects_identical_languages(self) -> None:
        h = _Harness()
        with self.assertRaises(ValueError):
            h.controller.start("ja", "ja-JP")
        self.assertFalse(h.controller.is_listening)

    def test_start_raises_when_recognizer_unavailable(self) -> None:
        h = _Harness()
        h.recognizer.available = False
        with self.assertRaises(RecognitionError) as ctx:
            h.controller.start("vi", "ja")
        self.assertEqual(ctx.exception.code, "unavailable")
        self.assertFalse(h.controller.is_listening)

    def test_stop_flushes_pending_buffer_once(self) -> None:
        h = _Harness()
        h.controller.start("vi", "ja")
        h.recognizer.final("xin chào")
        h.controller.stop()
        self.assertEqual(h.texts(), [("xin chào", "vi", "stop")])

        h.controller.stop()
        h.clock.advance(30.0)
        self.assertEqual(len(h.utterances), 1)
        self.assertEqual(h.recognizer.stop_calls, 1)
        self.assertFalse(h.controller.is_listening)
        self.assertEqual(h.clock.pending(), 0)

    def test_stop_flushes_every_language(self) -> None:
        h = _Harness()
        h.controller.start("vi", "ja")
        h.recognizer.final("tạm biệt")
        h.controller.buffers.append("ja", "またね")
        h.controller.stop()
        self.assertEqual(h.texts(), [("tạm biệt", "vi", "stop"), ("またね", "ja", "stop")])
        self.assertTrue(h.controller.buffers.is_empty("vi"))
        self.assertTrue(h.controller.buffers.is_empty("ja"))

    def test_stop_with_empty_buffers_emits_nothing(self) -> None:
        h = _Harness()
        h.controller.start("vi", "ja")
        h.controller.stop()
        self.assertEqual(h.utterances, [])

    def test_tokens_after_stop_are_ignored(self) -> None:
        h = _Harness()
        h.controller.start("vi", "ja")
        h.controller.stop()
        h.controller.handle_token(TranscriptToken(text="xin chào.", is_final=True, timestamp=0.0))
        self.assertEqual(h.utterances, [])
        self.assertEqual(h.progress, [])


class FinalizationTests(unittest.TestCase):
    def test_terminator_finalizes_immediately(self) -> None:
        h = _Harness()
        h.controller.start("vi", "ja")
        h.recognizer.final("xin")
        h.recognizer.final("chào.")
        self.assertEqual(h.texts(), [("xin chào.", "vi", "terminator")])
        self.assertTrue(h.controller.buffers.is_empty("vi"))

        h.clock.advance(15.0)
        h.controller.stop()
        self.assertEqual(len(h.utterances), 1)

    def test_japanese_terminator_set(self) -> None:
        h = _Harness()
        h.controller.start("ja", "vi")
        h.recognizer.final("今日は")
        h.recognizer.final("いい天気です。")
        self.assertEqual(h.texts(), [("今日はいい天気です。", "ja", "terminator")])

    def test_pause_emits_interim_when_buffer_is_empty(self) -> None:
        h = _Harness()
        h.controller.start("ja", "vi")
        h.recognizer.interim("今日は")
        h.recognizer.interim("今日はいい天気")
        h.clock.advance(2.9)
        self.assertEqual(h.utterances, [])
        h.clock.advance(0.2)
        self.assertEqual(h.texts(), [("今日はいい天気", "ja", "pause")])

    def test_pause_prefers_longer_interim_over_committed_text(self) -> None:
        h = _Harness()
        h.controller.start("ja", "vi")
        h.recognizer.final("今日は")
        h.recognizer.interim("今日はいい天気ですね")
        h.clock.advance(3.1)
        self.assertEqual(h.texts(), [("今日はいい天気ですね", "ja", "pause")])

    def test_pause_keeps_committed_text_when_longer(self) -> None:
        h = _Harness()
        h.controller.start("ja", "vi")
        h.recognizer.final("今日はいい天気")
        h.recognizer.interim("です")
        h.clock.advance(3.1)
        self.assertEqual(h.texts(), [("今日はいい天気", "ja", "pause")])

    def test_vietnamese_pause_is_shorter(self) -> None:
        h = _Harness()
        h.controller.start("vi", "ja")
        h.recognizer.final("cảm ơn bạn")
        h.clock.advance(1.9)
        self.assertEqual(h.texts(), [("cảm ơn bạn", "vi", "pause")])

    def test_interim_text_is_not_double_counted(self) -> None:
        h = _Harness()
        h.controller.start("vi", "ja")
        h.recognizer.interim("xin chào")
        h.recognizer.interim("xin chào các")
        h.recognizer.final("xin chào các bạn.")
        self.assertEqual(h.texts(), [("xin chào các bạn.", "vi", "terminator")])

    def test_max_duration_bounds_a_never_pausing_stream(self) -> None:
        h = _Harness()
        h.controller.start("vi", "ja")
        words = [f"word{i}" for i in range(15)]
        h.recognizer.interim(words[0])
        for count in range(2, 12):
            h.clock.advance(1.0)
            h.recognizer.interim(" ".join(words[:count]))
        max_events = [u for u in h.utterances if u.reason == "max_duration"]
        self.assertEqual(len(max_events), 1)
        self.assertTrue(max_events[0].text.startswith("word0 word1"))
        self.assertEqual(max_events[0].language, "vi")

    def test_progress_events_follow_interim_and_committed_text(self) -> None:
        h = _Harness()
        h.controller.start("vi", "ja")
        h.recognizer.interim("xin")
        h.recognizer.final("xin chào")
        self.assertEqual([(p.text, p.language) for p in h.progress], [("xin", "vi"), ("xin chào", "vi")])

    def test_finalize_without_new_text_emits_nothing(self) -> None:
        h = _Harness()
        h.controller.start("vi", "ja")
        h.recognizer.final("một hai ba.")
        h.clock.advance(12.0)
        h.controller.stop()
        self.assertEqual(len(h.utterances), 1)


class LanguageSwitchTests(unittest.TestCase):
    def _switch_to_japanese(self, h: _Harness) -> None:
        h.controller.start("vi", "ja")
        h.recognizer.final("xin chào")
        for _ in range(5):
            h.recognizer.interim("はい")

    def test_stable_detection_switches_language(self) -> None:
        h = _Harness()
        self._switch_to_japanese(h)
        self.assertEqual(h.texts(), [("xin chào", "vi", "switch")])
        self.assertEqual(h.controller.active_language, "ja")
        self.assertEqual(h.switches, [("vi", "ja")])
        self.assertEqual(h.controller.state.last_switch_time, 100.0)
        self.assertEqual(h.recognizer.stop_calls, 1)
        self.assertEqual(h.recognizer.start_calls, ["vi-VN"])
        # Two tokens after the switching one arrived during the restart gap.
        self.assertEqual(h.controller.metrics_reporter.snapshot()["dropped_tokens"], 2)
        self.assertTrue(h.controller.buffers.is_empty("ja"))

        h.clock.advance(0.1)
        self.assertEqual(h.recognizer.start_calls, ["vi-VN", "ja-JP"])
        h.recognizer.final("ありがとうございます。")
        self.assertEqual(h.texts()[-1], ("ありがとうございます。", "ja", "terminator"))

    def test_below_vote_threshold_does_not_switch(self) -> None:
        h = _Harness()
        h.controller.start("vi", "ja")
        h.recognizer.final("xin chào")
        h.recognizer.interim("はい")
        h.recognizer.interim("はい")
        self.assertEqual(h.controller.active_language, "vi")
        self.assertEqual(h.utterances, [])
        self.assertEqual(h.controller.buffers.get_pending_interim("vi"), "はい")

    def test_min_switch_interval_blocks_quick_switch_back(self) -> None:
        h = _Harness()
        self._switch_to_japanese(h)
        h.clock.advance(0.1)
        h.recognizer.final("はい")
        for _ in range(3):
            h.recognizer.final("vâng")
        self.assertEqual(h.controller.active_language, "ja")
        self.assertEqual(len(h.switches), 1)

        h.clock.advance(1.2)
        h.recognizer.final("vâng")
        self.assertEqual(h.controller.active_language, "vi")
        self.assertEqual(h.switches, [("vi", "ja"), ("ja", "vi")])
        self.assertEqual(h.utterances[-1].language, "ja")
        self.assertEqual(h.utterances[-1].reason, "switch")

    def test_stale_timer_cannot_finalize_after_switch(self) -> None:
        h = _Harness()
        self._switch_to_japanese(h)
        h.clock.advance(30.0)
        self.assertEqual(len(h.utterances), 1)

    def test_restart_retries_then_reports_error(self) -> None:
        h = _Harness()
        self._switch_to_japanese(h)
        h.recognizer.available = False
        h.clock.advance(1.0)
        self.assertEqual(h.recognizer.start_calls, ["vi-VN", "ja-JP", "ja-JP", "ja-JP"])
        self.assertEqual(len(h.errors), 1)
        self.assertEqual(h.errors[0].code, "unavailable")

    def test_stop_during_restart_cancels_it(self) -> None:
        h = _Harness()
        self._switch_to_japanese(h)
        h.controller.stop()
        h.clock.advance(1.0)
        self.assertEqual(h.recognizer.start_calls, ["vi-VN"])

    def test_chinese_switch_in_vietnamese_chinese_session(self) -> None:
        h = _Harness()
        h.controller.start("vi", "zh")
        h.recognizer.final("xin chào")
        for _ in range(5):
            h.recognizer.interim("你好世界")
        self.assertEqual(h.controller.active_language, "zh")
        self.assertEqual(h.texts(), [("xin chào", "vi", "switch")])

        h.clock.advance(0.1)
        self.assertEqual(h.recognizer.start_calls, ["vi-VN", "zh-CN"])
        h.recognizer.final("谢谢。")
        self.assertEqual(h.texts()[-1], ("谢谢。", "zh", "terminator"))

    def test_recognizer_language_decides_script_neutral_text(self) -> None:
        h = _Harness()
        h.controller.start("vi", "ja")
        h.recognizer.final("xin chào")
        for _ in range(3):
            h.recognizer.interim("ok ok", hint="ja-JP")
        self.assertEqual(h.controller.active_language, "ja")
        self.assertEqual(h.switches, [("vi", "ja")])

    def test_script_overrides_recognizer_language(self) -> None:
        h = _Harness()
        h.controller.start("vi", "ja")
        for _ in range(3):
            h.recognizer.final("cảm ơn", hint="ja-JP")
        self.assertEqual(h.controller.active_language, "vi")
        self.assertEqual(h.controller.stability_filter.window, ("vi", "vi", "vi"))

    def test_stop_inside_switch_finalize_abandons_the_switch(self) -> None:
        h = _Harness()

        def _stop_on_switch(utterance: Utterance) -> None:
            h.utterances.append(utterance)
            if utterance.reason == "switch":
                h.controller.stop()

        h.controller.on_utterance_finalized = _stop_on_switch
        h.controller.start("vi", "ja")
        h.recognizer.final("xin chào")
        for _ in range(3):
            h.recognizer.interim("はい")
        self.assertEqual(h.texts(), [("xin chào", "vi", "switch")])
        self.assertFalse(h.controller.is_listening)
        self.assertEqual(h.switches, [])
        self.assertEqual(h.controller.metrics_reporter.snapshot()["switches"], 0)
        self.assertEqual(h.recognizer.stop_calls, 1)
        h.clock.advance(1.0)
        self.assertEqual(h.recognizer.start_calls, ["vi-VN"])

    def test_foreign_script_falls_back_to_active_language(self) -> None:
        h = _Harness()
        h.controller.start("vi", "ja")
        for _ in range(4):
            h.recognizer.interim("안녕하세요")
        self.assertEqual(h.controller.active_language, "vi")
        self.assertEqual(h.controller.stability_filter.window, ("vi", "vi", "vi", "vi"))


class RecognizerErrorTests(unittest.TestCase):
    def test_benign_errors_are_ignored(self) -> None:
        h = _Harness()
        h.controller.start("vi", "ja")
        h.recognizer.error(RecognitionError("no-speech"))
        h.recognizer.error(RecognitionError("aborted"))
        self.assertEqual(h.errors, [])

    def test_real_errors_reach_the_error_handler(self) -> None:
        h = _Harness()
        h.controller.start("vi", "ja")
        h.recognizer.error(RecognitionError("network", "connection reset"))
        h.recognizer.error(ValueError("boom"))
        self.assertEqual([e.code for e in h.errors], ["network", "recognizer-failure"])
        self.assertEqual(h.controller.metrics_reporter.snapshot()["errors_by_stage"], {"recognition": 2})

    def test_errors_propagate_without_handler(self) -> None:
        h = _Harness(with_error_handler=False)
        h.controller.start("vi", "ja")
        with self.assertRaises(RecognitionError):
            h.recognizer.error(RecognitionError("not-allowed", "microphone blocked"))


if __name__ == "__main__":
    unittest.main()
