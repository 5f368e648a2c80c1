import sys
import argparse
import asyncio
import json
import logging
import time
from typing import Optional

from .config import load_config_from_env
from .engine import SimulationEngine
from .errors import SimulatorError
from .models import PlaybackState
from .parser import parse_line
from .sources import file_size, stream_from_file


async def run_playback(file_path: str, speed: float = 1000.0, jump: Optional[int] = None,
                       max_seconds: float = 60.0) -> dict:
    """
    파일을 적재하고 헤드리스로 재생 (또는 jump 위치로 탐색)

    Returns:
        최종 스냅샷 + 지오메트리 통계
    """
    engine = SimulationEngine(config=load_config_from_env(), autorun=False)
    await engine.load(stream_from_file(file_path, engine.config.chunk_size), file_size(file_path))
    engine.set_playback_speed(speed)

    if jump is not None:
        await engine.jump_to(jump)
    else:
        engine.start()
        deadline = time.monotonic() + max_seconds
        while engine.state == PlaybackState.RUNNING:
            engine.controller.tick()
            if time.monotonic() > deadline:
                logging.getLogger(__name__).warning("[Simulator] --max-seconds reached, stopping")
                engine.stop()
                break
            # 틱 사이 양보 (다른 태스크 없음 - 대기 없이 진행)
            await asyncio.sleep(0)

    result = {
        "snapshot": engine.snapshot().model_dump(mode="json"),
        "geometry": engine.geometry.stats(),
    }
    engine.dispose()
    return result


def main():
    parser = argparse.ArgumentParser(description="G-code Simulator CLI")
    parser.add_argument("--verbose", "-v", action="store_true", help="Enable debug logging")
    subparsers = parser.add_subparsers(dest="command", help="Commands")

    # Play command
    play_parser = subparsers.add_parser("play", help="Load and play a G-code file headlessly")
    play_parser.add_argument("file", help="Path to G-code file")
    play_parser.add_argument("--speed", "-s", type=float, default=1000.0, help="Playback speed multiplier")
    play_parser.add_argument("--jump", "-j", type=int, default=None, help="Seek to command index instead of playing")
    play_parser.add_argument("--max-seconds", type=float, default=60.0, help="Wall-clock limit for playback")

    # Parse command
    parse_parser = subparsers.add_parser("parse", help="Print parsed commands as JSON lines")
    parse_parser.add_argument("file", help="Path to G-code file")
    parse_parser.add_argument("--limit", "-n", type=int, default=None, help="Maximum number of commands")

    args = parser.parse_args()

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
    )

    if args.command == "play":
        try:
            result = asyncio.run(run_playback(args.file, args.speed, args.jump, args.max_seconds))
            print(json.dumps(result, indent=2, ensure_ascii=False))
        except (SimulatorError, OSError) as e:
            print(f"Error: {e}", file=sys.stderr)
            sys.exit(1)

    elif args.command == "parse":
        try:
            count = 0
            with open(args.file, "r", encoding="utf-8", errors="replace") as f:
                for line_number, line in enumerate(f, 1):
                    if args.limit is not None and count >= args.limit:
                        break
                    command = parse_line(line, line_number)
                    if command is None:
                        continue
                    print(json.dumps(command.model_dump(), ensure_ascii=False))
                    count += 1
        except OSError as e:
            print(f"Error: {e}", file=sys.stderr)
            sys.exit(1)

    else:
        parser.print_help()


if __name__ == "__main__":
    main()
