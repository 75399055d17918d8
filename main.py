from __future__ import annotations

import argparse
import asyncio
import json
import logging
import os
from typing import Optional

from dotenv import load_dotenv

from config_utils import SegmentationConfig, read_bool_env
from errors import RecognitionError, TranslationError
from finalization_scheduler import LoopTimerScheduler
from language_detector import normalize_language_code
from metrics_reporter import SessionMetricsReporter
from session_controller import SessionController
from transcript_models import ProgressEvent, Utterance
from transcription_service import ReplayRecognizer, load_transcript
from translation_service import ConversationTranslator, TranslationService


def _parse_args(argv: Optional[list[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Replay a recorded transcript through the utterance segmenter.",
    )
    parser.add_argument("transcript", help="JSONL file with {at, text, final} entries")
    parser.add_argument("--lang1", default=os.getenv("SESSION_LANGUAGE_1", "vi"))
    parser.add_argument("--lang2", default=os.getenv("SESSION_LANGUAGE_2", "ja"))
    parser.add_argument("--speed", type=float, default=1.0, help="replay speed multiplier")
    parser.add_argument("--translate", action="store_true", help="translate utterances (needs OPENAI_API_KEY)")
    parser.add_argument("--show-progress", action="store_true", help="print interim progress events")
    return parser.parse_args(argv)


def _print_progress(event: ProgressEvent) -> None:
    print(f"  … [{event.language}] {event.text}")


def _print_utterance(utterance: Utterance) -> None:
    print(f"[{utterance.timestamp:8.2f}] {utterance.language} ({utterance.reason}): {utterance.text}")


def _print_translation(utterance: Utterance, translated: str) -> None:
    print(f"           -> {translated}")


def _print_translation_error(utterance: Utterance, error: TranslationError) -> None:
    print(f"           !! translation failed: {error}")


def _print_recognition_error(error: RecognitionError) -> None:
    print(f"!! {error}")


async def run_replay(args: argparse.Namespace) -> dict:
    loop = asyncio.get_running_loop()
    entries = load_transcript(args.transcript)
    recognizer = ReplayRecognizer(entries, loop=loop, speed=args.speed)
    languages = (normalize_language_code(args.lang1), normalize_language_code(args.lang2))
    config = SegmentationConfig.from_env(languages)
    metrics = SessionMetricsReporter(
        enabled=read_bool_env("METRICS_ENABLED", False),
        output_path=os.getenv("METRICS_OUTPUT_PATH", "./reports/segmentation_events.jsonl"),
        summary_path=os.getenv("METRICS_SUMMARY_PATH", "./reports/segmentation_summary.json"),
        append_mode=read_bool_env("METRICS_APPEND_MODE", False),
    )
    translator: Optional[ConversationTranslator] = None
    if args.translate:
        translator = ConversationTranslator(
            TranslationService(),
            languages,
            on_translated=_print_translation,
            on_failed=_print_translation_error,
            metrics_reporter=metrics,
        )

    def _on_utterance(utterance: Utterance) -> None:
        _print_utterance(utterance)
        if translator is not None:
            translator.submit(utterance)

    controller = SessionController(
        recognizer,
        LoopTimerScheduler(loop),
        config=config,
        on_interim_progress=_print_progress if args.show_progress else None,
        on_utterance_finalized=_on_utterance,
        on_error=_print_recognition_error,
        metrics_reporter=metrics,
    )
    controller.start(*languages)
    try:
        # Leave room for the last pause timer to fire before flushing.
        await asyncio.sleep(recognizer.duration + max(config.pause_for(language) for language in languages) + 0.5)
    finally:
        controller.stop()
    if translator is not None:
        await translator.drain()
        # Rewrite the summary so translations finished after stop() are counted.
        metrics.finalize_session()
    return metrics.snapshot()


def main(argv: Optional[list[str]] = None) -> None:
    load_dotenv()
    log_level_name = (os.getenv("LOG_LEVEL", "WARNING") or "WARNING").upper()
    log_level = getattr(logging, log_level_name, logging.WARNING)
    logging.basicConfig(level=log_level, format="%(asctime)s %(levelname)s %(message)s")

    args = _parse_args(argv)
    snapshot = asyncio.run(run_replay(args))
    print(json.dumps(snapshot, ensure_ascii=False, indent=2))


if __name__ == "__main__":
    main()
