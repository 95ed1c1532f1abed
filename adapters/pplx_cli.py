#!/usr/bin/env python3
"""
pplx_cli.py — Command-line front end for the Perplexity SSE client

One-shot:     pplx <query> [--mode M] [--model X] [--stream] [--json]
                           [--language L] [--incognito] [--cookies PATH]
                           [--config PATH] [--verbose]
Interactive:  pplx --interactive [--mode M] [--model X] [--cookies PATH]
Models:       pplx --models <mode>
Cookie file:  pplx --fix-cookies <input> [output]

Exit codes:
  0 = success
  1 = backend returned an error status (>= 400)
  2 = network/transport error
  4 = invalid request (mode, model, unsupported feature, cookie file, config)
  5 = internal error
"""

import asyncio
import dataclasses
import json
import logging
import sys
from contextlib import aclosing
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import httpx

from config_loader import load_config
from cookie_store import DEFAULT_COOKIES_FILE, load_cookies, normalize_cookies, write_cookies
from payload_builder import FollowUp, SearchConfig, get_available_models
from pplx_client import PerplexityClient, search_config_from
from pplx_errors import PplxError, TransportStatusError
from record_decoder import try_parse_json

logger = logging.getLogger("pplx.cli")

VALUE_OPTIONS = {"--mode", "--model", "--language", "--cookies", "--config", "--models", "--fix-cookies"}
FLAG_OPTIONS = {"--stream", "--json", "--incognito", "--interactive", "--verbose"}

FINAL_STEP_TYPES = ("FINAL", "INITIAL_QUERY")
SUMMARY_KEYS = ("query_str", "text", "blocks")

EXIT_BACKEND = 1
EXIT_NETWORK = 2
EXIT_INVALID = 4
EXIT_INTERNAL = 5


class UsageError(Exception):
    pass


# === Answer Extraction ===


def _step_answer(step: Any) -> Optional[str]:
    """Answer carried by a step's content.answer, itself often a JSON string."""
    if not isinstance(step, dict):
        return None
    content = step.get("content")
    if not isinstance(content, dict) or not content.get("answer"):
        return None

    answer = content["answer"]
    if not isinstance(answer, str):
        return None
    parsed = try_parse_json(answer)
    if not parsed.ok:
        return answer
    if isinstance(parsed.value, dict) and parsed.value.get("answer"):
        return parsed.value["answer"]
    return None


def find_answer(message: Any) -> Optional[str]:
    """Best textual answer in a decoded message, or None if there is none yet."""
    if isinstance(message, str):
        return message or None
    if not isinstance(message, dict):
        return None

    steps = message.get("text")
    if isinstance(steps, list):
        for step in reversed(steps):
            if isinstance(step, dict) and step.get("step_type") in FINAL_STEP_TYPES:
                answer = _step_answer(step)
                if answer:
                    return answer

    blocks = message.get("blocks")
    if isinstance(blocks, list):
        for block in blocks:
            markdown = block.get("markdown_block") if isinstance(block, dict) else None
            if isinstance(markdown, dict) and markdown.get("answer"):
                return markdown["answer"]

    if isinstance(steps, list):
        chunks = [a for a in (_step_answer(step) for step in steps) if a]
        if chunks:
            return "\n".join(chunks)

    return None


def extract_answer(message: Any) -> str:
    """Printable answer; falls back to a compact JSON summary."""
    if message is None:
        return "[no response]"
    answer = find_answer(message)
    if answer:
        return answer
    if isinstance(message, dict):
        summary = {k: message[k] for k in SUMMARY_KEYS if k in message}
        return json.dumps(summary, indent=2, default=str)
    return json.dumps(message, indent=2, default=str)


# === Argument Parsing ===


def parse_args(args: List[str]) -> Tuple[Dict[str, Any], List[str]]:
    """Split argv into {option: value} and positionals."""
    options: Dict[str, Any] = {}
    positionals: List[str] = []
    i = 0
    while i < len(args):
        arg = args[i]
        if arg in VALUE_OPTIONS:
            if i + 1 >= len(args):
                raise UsageError(f"{arg} requires a value")
            options[arg] = args[i + 1]
            i += 2
            continue
        if arg in FLAG_OPTIONS:
            options[arg] = True
        elif arg.startswith("--"):
            raise UsageError(f"Unknown option: {arg}")
        else:
            positionals.append(arg)
        i += 1
    return options, positionals


def _print_usage() -> None:
    print("Usage:", file=sys.stderr)
    print("  pplx <query> [--mode M] [--model X] [--stream] [--json] [--cookies PATH]", file=sys.stderr)
    print("  pplx --interactive [--mode M] [--model X] [--cookies PATH]", file=sys.stderr)
    print("  pplx --models <mode>", file=sys.stderr)
    print("  pplx --fix-cookies <input> [output]", file=sys.stderr)


# === Commands ===


def build_client(options: Dict[str, Any]) -> Tuple[PerplexityClient, Dict[str, Any]]:
    """Client from config; falls back to ./perplexity_cookies.json when no cookies are set."""
    config = load_config(options.get("--config"))
    if options.get("--cookies"):
        config["cookies"] = load_cookies(options["--cookies"])
    elif not config.get("cookies") and not config.get("cookies_file") and Path(DEFAULT_COOKIES_FILE).is_file():
        logger.debug("Using %s from the working directory", DEFAULT_COOKIES_FILE)
        config["cookies_file"] = DEFAULT_COOKIES_FILE
    return PerplexityClient.from_config(config), config


async def run_once(
    client: PerplexityClient,
    query: str,
    config: SearchConfig,
    stream: bool = False,
    as_json: bool = False,
) -> Any:
    if not stream:
        result = await client.search(query, config)
        print(json.dumps(result, indent=2) if as_json else extract_answer(result))
        return result

    printed = ""
    last = None
    async with aclosing(client.stream_search(query, config)) as messages:
        async for message in messages:
            last = message
            if as_json:
                print(json.dumps(message), flush=True)
                continue
            answer = find_answer(message)
            if not answer or answer == printed:
                continue
            if answer.startswith(printed):
                sys.stdout.write(answer[len(printed):])
            else:
                sys.stdout.write("\n" + answer)
            sys.stdout.flush()
            printed = answer
    if not as_json:
        print("" if printed else extract_answer(last))
    return last


async def run_interactive(client: PerplexityClient, config: SearchConfig) -> None:
    print(f"Mode: {config.mode}. Type ':q' to quit.")
    loop = asyncio.get_running_loop()
    while True:
        try:
            query = await loop.run_in_executor(None, input, "> ")
        except EOFError:
            break
        query = query.strip()
        if not query:
            continue
        if query == ":q":
            break

        try:
            result = await run_once(client, query, config, stream=True)
        except (PplxError, httpx.HTTPError) as e:
            print(f"Request error: {e}", file=sys.stderr)
            continue

        if isinstance(result, dict) and result.get("backend_uuid"):
            config = dataclasses.replace(config, follow_up=FollowUp.from_response(result))


def list_models(mode: str) -> None:
    models = [m for m in get_available_models(mode) if m is not None]
    print(f"{mode}: (default)" + "".join(f", {m}" for m in models))


def fix_cookies(input_path: str, output_path: Optional[str]) -> None:
    output_path = output_path or "perplexity_cookies_fixed.json"
    with open(input_path, encoding="utf-8") as f:
        data = json.load(f)
    cookies = normalize_cookies(data)
    write_cookies(output_path, cookies)
    print(f"Wrote {len(cookies)} cookies to {output_path}")


# === Main Entry Point ===


def main(argv: Optional[List[str]] = None) -> None:
    args = sys.argv[1:] if argv is None else argv

    try:
        options, positionals = parse_args(args)
    except UsageError as e:
        print(f"ERROR: {e}", file=sys.stderr)
        _print_usage()
        sys.exit(EXIT_INVALID)

    logging.basicConfig(
        level=logging.DEBUG if options.get("--verbose") else logging.WARNING,
        format="%(asctime)s %(name)s %(levelname)s %(message)s",
        stream=sys.stderr,
    )

    try:
        if "--models" in options:
            list_models(options["--models"])
            return

        if "--fix-cookies" in options:
            fix_cookies(options["--fix-cookies"], positionals[0] if positionals else None)
            return

        client, config = build_client(options)
        overrides = {
            "mode": options.get("--mode"),
            "language": options.get("--language"),
            "incognito": True if options.get("--incognito") else None,
        }
        if "--model" in options:
            overrides["model"] = options["--model"]
        search_config = search_config_from(config, **overrides)

        if options.get("--interactive"):
            asyncio.run(run_interactive(client, search_config))
            return

        if not positionals:
            _print_usage()
            sys.exit(EXIT_INVALID)

        asyncio.run(run_once(
            client,
            " ".join(positionals),
            search_config,
            stream=bool(options.get("--stream")),
            as_json=bool(options.get("--json")),
        ))

    except TransportStatusError as e:
        print(f"ERROR: {e}", file=sys.stderr)
        sys.exit(EXIT_BACKEND)
    except httpx.HTTPError as e:
        print(f"ERROR: Network error: {e}", file=sys.stderr)
        sys.exit(EXIT_NETWORK)
    except PplxError as e:
        print(f"ERROR: {e}", file=sys.stderr)
        sys.exit(EXIT_INVALID)
    except (OSError, ValueError) as e:
        print(f"ERROR: {e}", file=sys.stderr)
        sys.exit(EXIT_INVALID)
    except KeyboardInterrupt:
        sys.exit(130)
    except Exception as e:
        print(f"ERROR: Internal error: {e}", file=sys.stderr)
        sys.exit(EXIT_INTERNAL)


if __name__ == "__main__":
    main()
