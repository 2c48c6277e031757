"""Application entrypoint: a headless driver for the transcription pipeline."""

from __future__ import annotations

import argparse
import logging
import sys
import wave
from pathlib import Path

from config import JsonConfigStore
from errors import ERROR_MESSAGES, PipelineError
from model_catalog import MODEL_TYPES, is_model_downloaded, model_directory
from models import SessionState
from recorder import SoundDeviceRecorder, WavFileSource
from session_controller import TranscriptionSession
from wiring import build_session

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="pushtalk")
    parser.add_argument("--config", type=Path, default=None, help="Path to config JSON")
    parser.add_argument("--model", default=None, help="Model id (default: from config)")
    parser.add_argument(
        "--policy",
        default=None,
        choices=("pause", "overlap", "deferred"),
        help="Merge policy (default: from config, then model default)",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")

    sub = parser.add_subparsers(dest="command")
    sub.add_parser("listen", help="Record from the microphone; Enter starts and stops")
    transcribe = sub.add_parser("transcribe", help="Run a 16-bit WAV file through the pipeline")
    transcribe.add_argument("wav", type=Path)
    sub.add_parser("models", help="List known models and whether they are downloaded")
    return parser


class ConsoleApp:
    def __init__(self, session: TranscriptionSession) -> None:
        self.session = session

    @staticmethod
    def on_partial(text: str) -> None:
        print(f"\r… {text}", end="", flush=True)

    @staticmethod
    def on_error(code: str, message: str) -> None:
        print(f"\n⚠️ {ERROR_MESSAGES.get(code, code)} ({message})", file=sys.stderr)

    @staticmethod
    def on_state_change(from_state: SessionState, to_state: SessionState) -> None:
        if to_state == SessionState.RECORDING:
            print("🎙️ Listening... (Enter to stop)")
        elif to_state == SessionState.FINALIZING:
            print("\nProcessing...")

    def run_listen(self) -> int:
        print("Press Enter to start recording, Ctrl-D to quit.")
        try:
            for _ in sys.stdin:
                if self.session.state == SessionState.IDLE:
                    self.session.start_session()
                else:
                    self.session.stop_session(callback=self._print_final)
        except KeyboardInterrupt:
            pass
        finally:
            self.session.close()
        return 0

    def run_file(self, source: WavFileSource) -> int:
        try:
            self.session.start_session()
            source.finished.wait()
            text = self.session.stop_session(callback=self._print_final)
        finally:
            self.session.close()
        return 0 if text else 1

    @staticmethod
    def _print_final(text: str | None) -> None:
        print(f"\n{text}" if text else "\n(no speech)")


def list_models(store: JsonConfigStore) -> int:
    models_dir = store.get_models_dir()
    selected = store.get_model_id()
    for model in MODEL_TYPES.values():
        mark = "*" if model.id == selected else " "
        status = "ready" if is_model_downloaded(model, models_dir) else "missing"
        where = model_directory(model, models_dir) if model.is_local else "cloud"
        print(f"{mark} {model.id:<22} {status:<8} {model.title}  [{where}]")
    return 0


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%H:%M:%S",
    )
    store = JsonConfigStore(path=args.config)

    if args.command == "models":
        return list_models(store)
    if args.command not in ("listen", "transcribe"):
        build_parser().print_help()
        return 2

    try:
        recorder = WavFileSource(args.wav) if args.command == "transcribe" else SoundDeviceRecorder()
        session = build_session(
            store,
            recorder,
            model_id=args.model,
            merge_policy=args.policy,
            on_state_change=ConsoleApp.on_state_change,
            on_partial=ConsoleApp.on_partial,
            on_error=ConsoleApp.on_error,
        )
    except (PipelineError, ValueError, OSError, wave.Error) as exc:
        logger.error("Cannot start: %s", exc)
        return 1

    app = ConsoleApp(session)
    if isinstance(recorder, WavFileSource):
        return app.run_file(recorder)
    return app.run_listen()


if __name__ == "__main__":
    raise SystemExit(main())
