"""
Command-line entrypoint: tempokey FILE...

Prints one JSON document per run with the analysis result and tempo
suggestions for each file.

Exit codes: 0 success, 1 any file failed, 130 interrupted.
"""

import argparse
import json
import logging
import sys
from typing import List, Optional

from tempokey.analyze.suggestions import generate_tempo_suggestions
from tempokey.audio_io import AudioDecodeError, load_audio
from tempokey.cache import FileIdentity
from tempokey.config import Config, ConfigError
from tempokey.errors import AnalysisError, describe_error
from tempokey.processor import AnalysisOrchestrator

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="tempokey", description="Detect tempo (BPM) and musical key of audio files.")
    parser.add_argument("files", nargs="+", help="Audio files to analyze")
    parser.add_argument("--config", help="Path to tempokey.toml (default: $TEMPOKEY_CONFIG_PATH or configs/tempokey.toml)")
    parser.add_argument("--timeout", type=float, help="Per-file timeout in seconds")
    parser.add_argument("--backend", choices=["auto", "essentia", "aubio", "none"], help="Primary DSP backend")
    parser.add_argument("--no-cache", action="store_true", help="Disable the result cache")
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    return parser


def analyze_file(orchestrator: AnalysisOrchestrator, file_path: str, timeout_ms: Optional[float]) -> dict:
    """
    Analyze one file into a JSON-ready report.

    Returns:
        {"file", "result", "suggestions"} on success, {"file", "error"} on failure
    """
    try:
        buffer = load_audio(file_path)
        identity = FileIdentity.from_path(file_path)
        result = orchestrator.analyze(buffer, timeout_ms=timeout_ms, file_identity=identity)
    except AudioDecodeError as e:
        logger.error(str(e))
        return {"file": file_path, "error": {"type": "decode", "message": str(e), "can_retry": False}}
    except AnalysisError as e:
        logger.error(f"Analysis failed for {file_path}: {e}")
        return {"file": file_path, "error": describe_error(e)}

    suggestions = generate_tempo_suggestions(result.bpm.bpm, result.bpm.confidence)
    return {"file": file_path, "result": result.to_dict(), "suggestions": suggestions.to_dict()}


def main(argv: Optional[List[str]] = None) -> int:
    """Main CLI entrypoint."""
    args = build_parser().parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="[%(asctime)s] [%(levelname)s] [%(name)s] %(message)s",
        stream=sys.stderr,
    )

    orchestrator = None
    try:
        config = Config.load(args.config)
        if args.no_cache:
            config["cache"]["enabled"] = False
        logger.info(f"Config loaded: {config}")

        orchestrator = AnalysisOrchestrator.from_config(config, backend_name=args.backend)
        timeout_ms = args.timeout * 1000.0 if args.timeout is not None else None

        reports = [analyze_file(orchestrator, path, timeout_ms) for path in args.files]
        print(json.dumps({"files": reports}, indent=2))

        failed = sum(1 for r in reports if "error" in r)
        if failed:
            logger.warning(f"{failed}/{len(reports)} files failed")
            return 1
        logger.info(f"✅ Analyzed {len(reports)} files")
        return 0

    except KeyboardInterrupt:
        logger.warning("Analysis interrupted by user")
        if orchestrator is not None:
            orchestrator.cancel()
        return 130
    except ConfigError as e:
        logger.error(f"Invalid configuration: {e}")
        return 1
    except Exception as e:
        logger.error(f"Analysis failed: {e}", exc_info=True)
        return 1
    finally:
        if orchestrator is not None:
            orchestrator.shutdown()


if __name__ == "__main__":
    sys.exit(main())
