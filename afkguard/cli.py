"""
AfkGuard CLI entry point.

Usage:
    afkguard run          --config afkguard.yaml [--connect]   # Start the guard
    afkguard check-config --config afkguard.yaml               # Validate and print config
"""

import argparse
import asyncio
import os
import sys
import traceback

import yaml

# ---------------------------------------------------------------------------
# Command handlers
# ---------------------------------------------------------------------------


def cmd_run(args) -> None:
    """Run the supervisor until interrupted."""
    from afkguard.auth import load_dotenv_if_available
    from afkguard.main import load_config, run, set_log_level

    load_dotenv_if_available(args.env_file)
    set_log_level(args.log_level)
    config = load_config(args.config)
    asyncio.run(run(config, connect=args.connect))


def cmd_check_config(args) -> None:
    """Validate the config and print the effective settings."""
    from afkguard.auth import load_dotenv_if_available
    from afkguard.channels import get_ready_channels
    from afkguard.main import load_config, set_log_level
    from afkguard.safety import SafetyConfig
    from afkguard.supervisor import ReconnectPolicy

    from rich.console import Console
    from rich.syntax import Syntax
    from rich.table import Table

    load_dotenv_if_available(args.env_file)
    set_log_level(args.log_level)
    config = load_config(args.config)
    policy = ReconnectPolicy.from_config(config)
    safety = SafetyConfig.from_config(config)
    driver = config.get("driver") or {"type": "simulation"}
    channel = (config.get("notifications") or {}).get("channel", "console")
    ready = get_ready_channels()

    effective = {
        "session": config.get("session", {}),
        "reconnect": {
            "max_attempts": policy.max_attempts,
            "base_delay_s": policy.base_delay,
            "max_delay_s": policy.max_delay,
            "strategy": policy.strategy,
        },
        "safety": safety.to_dict(),
        "driver": driver,
    }

    console = Console()
    console.print(
        Syntax(
            yaml.safe_dump(effective, sort_keys=False, allow_unicode=True),
            "yaml",
            word_wrap=True,
            background_color="default",
        )
    )

    table = Table(show_header=True, header_style="bold", box=None, padding=(0, 1))
    table.add_column("Check")
    table.add_column("Detail")
    table.add_row("Driver", driver.get("class") or driver.get("type", "simulation"))
    channel_state = "[green]ready[/]" if channel in ready else "[yellow]missing credentials[/]"
    table.add_row("Channel", f"{channel} ({channel_state})")
    table.add_row("Ready channels", ", ".join(ready) or "none")
    table.add_row(
        "Reconnect",
        f"{policy.strategy}, {policy.base_delay:g}s..{policy.max_delay:g}s, "
        f"up to {policy.max_attempts} attempts",
    )
    table.add_row(
        "Safety",
        f"{'[green]enabled[/]' if safety.enabled else '[red]disabled[/]'}, "
        f"{len(safety.trusted_players)} trusted, {len(safety.blocked_players)} blocked",
    )
    console.print(table)
    console.print(f"\n  [green]Config OK:[/] {args.config}\n", highlight=False)


def main(argv=None) -> None:
    parser = argparse.ArgumentParser(
        prog="afkguard",
        description="AfkGuard - keeps an unattended game session alive and safe",
        epilog=(
            "Quick start:\n"
            "  afkguard check-config --config afkguard.yaml\n"
            "  afkguard run --config afkguard.yaml --connect\n"
        ),
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    sub = parser.add_subparsers(dest="command")

    def _common(p):
        p.add_argument("--config", default="afkguard.yaml", help="AfkGuard YAML config")
        p.add_argument("--env-file", default=None, help="Extra .env file to load")
        p.add_argument("--log-level", default=None, help="DEBUG, INFO, WARNING, ...")

    # afkguard run
    p_run = sub.add_parser(
        "run",
        help="Start the supervisor and notification channel",
        epilog="Example: afkguard run --config afkguard.yaml --connect",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    _common(p_run)
    p_run.add_argument("--connect", action="store_true", help="Connect on startup")

    # afkguard check-config
    p_check = sub.add_parser("check-config", help="Validate and print the effective config")
    _common(p_check)

    args = parser.parse_args(argv)

    commands = {
        "run": cmd_run,
        "check-config": cmd_check_config,
    }

    handler = commands.get(args.command)
    if handler:
        handler(args)
    else:
        parser.print_help()


def run_cli() -> None:
    """Wrap main() with user-friendly error handling."""
    from afkguard.errors import ConfigError, DriverError

    try:
        main()
    except KeyboardInterrupt:
        print("\n  Interrupted.\n")
        sys.exit(130)
    except SystemExit:
        raise
    except ConfigError as exc:
        print(f"\n  Config error: {exc}")
        print("  Hint: Run `afkguard check-config` to see every problem.\n")
        sys.exit(1)
    except DriverError as exc:
        print(f"\n  Driver error: {exc}\n")
        sys.exit(1)
    except ImportError as exc:
        dep = exc.name or str(exc)
        print(f"\n  Missing dependency: {dep}")
        suggestions = {
            "yaml": "pip install pyyaml",
            "dotenv": "pip install python-dotenv",
            "rich": "pip install rich",
            "discord": "pip install afkguard[discord]",
        }
        hint = suggestions.get(dep)
        if hint:
            print(f"  Hint: {hint}")
        print()
        sys.exit(1)
    except Exception as exc:
        print(f"\n  Unexpected error: {exc}")
        print("  Set AFKGUARD_LOG_LEVEL=DEBUG and try again for details\n")
        if os.getenv("AFKGUARD_LOG_LEVEL", "").upper() == "DEBUG":
            traceback.print_exc()
        sys.exit(1)


if __name__ == "__main__":
    run_cli()
