"""
CLI Entrypoint for the Inference Core

Runs one or more user turns through the orchestrator and prints one JSON line
per turn. Repeat --prompt for a multi-turn conversation.

Usage:
    minima-brain --prompt "Explain the KV cache simply." --verbose
    python -m minima_brain.cli --config configs/minima.yaml \\
        --prompt "Hello" --prompt "Tell me more" --entitled
"""

import argparse
import asyncio
import json
import logging
import sys
from typing import Any, Dict

from .config import load_config
from .orchestrator import build_orchestrator
from .specdec.deterministic import ensure_deterministic, set_deterministic_mode
from .tiers import ThermalState


def setup_logging(verbose: bool = False) -> None:
    """Set up logging configuration."""
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
        stream=sys.stderr,
    )


def parse_args(argv=None) -> argparse.Namespace:
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(
        description="On-device inference core CLI",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  minima-brain --prompt "Hello world"
  minima-brain --impl hf --entitled --prompt "Hello" --prompt "And then?"
  minima-brain --config configs/minima.yaml --thermal serious --prompt "Test"
        """,
    )

    parser.add_argument(
        "--prompt",
        type=str,
        action="append",
        required=True,
        help="User turn text (repeat for multiple turns)",
    )
    parser.add_argument("--config", type=str, help="Path to YAML configuration file")
    parser.add_argument("--system-prompt", type=str, help="Override the system prompt")
    parser.add_argument(
        "--impl",
        type=str,
        choices=["fake", "hf"],
        help="Backend implementation (default from config)",
    )
    parser.add_argument(
        "--entitled",
        action="store_true",
        help="Allow the Sovereign tier for this session",
    )
    parser.add_argument(
        "--thermal",
        type=str,
        choices=[state.value for state in ThermalState],
        default=ThermalState.NOMINAL.value,
        help="Device thermal state (default: nominal)",
    )
    parser.add_argument("--seed", type=int, help="Random seed for reproducibility")
    parser.add_argument(
        "--max-chars", type=int, help="Maximum characters of output per turn"
    )
    parser.add_argument("--verbose", action="store_true", help="Enable verbose logging")

    return parser.parse_args(argv)


def apply_overrides(config: Dict[str, Any], args: argparse.Namespace) -> None:
    """Apply CLI flags on top of the loaded configuration."""
    if args.system_prompt is not None:
        config["system_prompt"] = args.system_prompt
    if args.impl is not None:
        config["implementation"] = args.impl
    if args.seed is not None:
        config["seed"] = args.seed
    if args.max_chars is not None:
        config["scheduler"]["max_output_chars"] = args.max_chars


async def run(args: argparse.Namespace) -> None:
    config = load_config(args.config)
    apply_overrides(config, args)
    if args.seed is not None:
        set_deterministic_mode(args.seed)
    else:
        ensure_deterministic()

    orchestrator = build_orchestrator(config)
    await orchestrator.start()

    thermal = ThermalState(args.thermal)
    for prompt in args.prompt:
        result = await orchestrator.run_turn(
            prompt, entitled=args.entitled, thermal=thermal
        )
        print(json.dumps(result.to_dict(), indent=None), flush=True)


def main(argv=None) -> None:
    """Main CLI entrypoint."""
    args = parse_args(argv)

    setup_logging(args.verbose)
    logger = logging.getLogger(__name__)

    try:
        logger.info(f"Running {len(args.prompt)} turn(s)")
        asyncio.run(run(args))
    except KeyboardInterrupt:
        logger.info("Interrupted by user")
        sys.exit(1)
    except Exception as e:
        logger.error(f"Error: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
