"""Local demo agent for launcher integration tests."""

from __future__ import annotations

import argparse
import json
import sys
import time
from pathlib import Path


def main(argv: list[str] | None = None) -> int:
    """Echo the received prompt and exit with the requested code."""

    parser = argparse.ArgumentParser()
    parser.add_argument("--prompt", required=False)
    parser.add_argument("--prompt-file", required=False)
    parser.add_argument("--input-format", choices=("text", "stream-json"), default=None)
    parser.add_argument("--exit-code", type=int, default=0)
    parser.add_argument("--sleep", type=float, default=0.0)
    args, _ = parser.parse_known_args(argv)

    if args.prompt is not None:
        prompt = args.prompt
        transport = "argv"
    elif args.prompt_file:
        prompt = Path(args.prompt_file).read_text("utf-8")
        transport = "file"
    elif args.input_format == "stream-json":
        message = json.loads(sys.stdin.readline())
        prompt = "".join(
            part.get("text", "")
            for part in message["message"]["content"]
            if part.get("type") == "text"
        )
        transport = "stream-json"
    else:
        prompt = sys.stdin.read()
        transport = "stdin"

    if args.sleep > 0:
        time.sleep(args.sleep)

    sys.stdout.write(json.dumps({"transport": transport, "prompt": prompt}) + "\n")
    sys.stdout.flush()
    if args.exit_code != 0:
        sys.stderr.write(f"echo agent failing with exit code {args.exit_code}\n")
    return args.exit_code


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
