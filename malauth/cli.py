"""Command-line interface for logging in and managing the token cache."""

from __future__ import annotations

import argparse
import asyncio
import os
import sys
import webbrowser

from pathlib import Path
from typing import TYPE_CHECKING

from pydantic import ValidationError

from .auth.coordinator import AuthCoordinator
from .auth.token_store import EncryptedFileTokenStore
from .exceptions import ConfigurationError, MalAuthException
from .log import configure


if TYPE_CHECKING:
    from .config import MalAuthSettings


EXIT_OK = 0
EXIT_AUTH_ERROR = 1
EXIT_CONFIG_ERROR = 2


def main(argv: list[str] | None = None) -> int:
    """Run the main CLI entry point.

    Parameters
    ----------
    argv : list of str, optional
        Arguments to parse (default: ``sys.argv[1:]``).

    Returns
    -------
    int
        Exit code.
    """
    parser = argparse.ArgumentParser(
        prog="malauth",
        description="MyAnimeList OAuth2 login and token cache tools",
    )
    parser.add_argument(
        "--debug",
        action="store_true",
        help="Log the handshake and refresh steps",
    )

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    # login command
    login_parser = subparsers.add_parser(
        "login",
        help="Authorize this client in the browser and cache the tokens",
    )
    login_parser.add_argument(
        "--no-browser",
        action="store_true",
        help="Only print the authorization URL",
    )
    login_parser.add_argument(
        "--timeout",
        type=float,
        default=None,
        help="Seconds to wait for the browser redirect (uses config default)",
    )

    subparsers.add_parser(
        "token",
        help="Print a valid access token, refreshing it if needed",
    )
    subparsers.add_parser(
        "logout",
        help="Delete the cached tokens",
    )

    # config command
    config_parser = subparsers.add_parser(
        "config",
        help="Show or export configuration",
    )
    config_group = config_parser.add_mutually_exclusive_group()
    config_group.add_argument(
        "--show",
        action="store_true",
        help="Show current configuration",
    )
    config_group.add_argument(
        "--toml",
        action="store_true",
        help="Export configuration as TOML",
    )
    config_group.add_argument(
        "--env",
        action="store_true",
        help="Export configuration as environment variables",
    )
    config_group.add_argument(
        "--sources",
        action="store_true",
        help="Show configuration file sources",
    )
    config_parser.add_argument(
        "--output",
        "-o",
        type=str,
        help="Output file path (default: stdout)",
    )

    # init command
    init_parser = subparsers.add_parser(
        "init",
        help="Initialize a malauth.toml configuration file",
    )
    init_parser.add_argument(
        "--force",
        "-f",
        action="store_true",
        help="Overwrite existing configuration file",
    )
    init_parser.add_argument(
        "--path",
        "-p",
        type=str,
        default="malauth.toml",
        help="Path for configuration file (default: malauth.toml)",
    )

    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        return EXIT_OK
    if args.command == "init":
        return handle_init(args)

    try:
        settings = _load_settings()
    except ConfigurationError as exc:
        print(f"Configuration error: {exc}", file=sys.stderr)
        return EXIT_CONFIG_ERROR

    configure(settings.log)
    if args.debug:
        from .log import enable_debug

        enable_debug()

    if args.command == "config":
        return handle_config(args, settings)

    handlers = {
        "login": _login,
        "token": _token,
        "logout": _logout,
    }
    try:
        return asyncio.run(handlers[args.command](args, settings))
    except ConfigurationError as exc:
        print(f"Configuration error: {exc}", file=sys.stderr)
        return EXIT_CONFIG_ERROR
    except MalAuthException as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return EXIT_AUTH_ERROR
    except KeyboardInterrupt:
        print("\nCancelled.", file=sys.stderr)
        return EXIT_AUTH_ERROR


def _load_settings() -> MalAuthSettings:
    from .config import MalAuthSettings

    try:
        return MalAuthSettings()
    except ValidationError as exc:
        msg = f"invalid settings: {exc}"
        raise ConfigurationError(msg) from exc


def _cache_location(coordinator: AuthCoordinator) -> str:
    store = coordinator.token_store
    if isinstance(store, EncryptedFileTokenStore):
        return str(store.path)
    return "memory (not persisted)"


async def _login(args: argparse.Namespace, settings: MalAuthSettings) -> int:
    async with AuthCoordinator.from_settings(settings) as coordinator:
        request = coordinator.begin_login()
        print("Open this URL in your browser to authorize malauth:\n")
        print(request.url)
        print()
        if not args.no_browser:
            webbrowser.open(request.url)

        await coordinator.complete_login(timeout=args.timeout)
        print(f"Logged in. Tokens cached in {_cache_location(coordinator)}")
    return EXIT_OK


async def _token(args: argparse.Namespace, settings: MalAuthSettings) -> int:  # noqa: ARG001
    async with AuthCoordinator.from_settings(settings) as coordinator:
        if await coordinator.initialize() is None:
            print("Not logged in. Run: malauth login", file=sys.stderr)
            return EXIT_AUTH_ERROR
        print(await coordinator.get_valid_token())
    return EXIT_OK


async def _logout(args: argparse.Namespace, settings: MalAuthSettings) -> int:  # noqa: ARG001
    async with AuthCoordinator.from_settings(settings) as coordinator:
        await coordinator.logout()
        print(f"Removed cached tokens from {_cache_location(coordinator)}")
    return EXIT_OK


def handle_config(args: argparse.Namespace, settings: MalAuthSettings) -> int:
    """Handle the config command.

    Parameters
    ----------
    args : argparse.Namespace
        Parsed command line arguments.
    settings : MalAuthSettings
        The loaded settings.

    Returns
    -------
    int
        Exit code.
    """
    if args.sources:
        return show_config_sources()

    if args.toml:
        output = settings.to_toml()
    elif args.env:
        output = settings.to_env()
    else:
        output = settings.show()

    if args.output:
        Path(args.output).write_text(output, encoding="utf-8")
        print(f"Configuration written to {args.output}")
    else:
        print(output)

    return EXIT_OK


def handle_init(args: argparse.Namespace) -> int:
    """Handle the init command.

    Parameters
    ----------
    args : argparse.Namespace
        Parsed command line arguments.

    Returns
    -------
    int
        Exit code.
    """
    path = Path(args.path)

    if path.exists() and not args.force:
        print(f"Error: {path} already exists. Use --force to overwrite.", file=sys.stderr)
        return EXIT_AUTH_ERROR

    try:
        settings = _load_settings()
    except ConfigurationError as exc:
        print(f"Configuration error: {exc}", file=sys.stderr)
        return EXIT_CONFIG_ERROR

    header = """# malauth configuration file
#
# Environment variables can override any setting:
#   MALAUTH_OAUTH2__CLIENT_ID="your-client-id"
#   MALAUTH_OAUTH2__REDIRECT_URI="http://localhost:2561/callback"
#   MALAUTH_CACHE__BACKEND="memory"
#   MALAUTH_LOG__LEVEL="DEBUG"
#
# Use nested keys with __ (double underscore) delimiter.
# Secrets are left commented out; set them through the environment.

"""
    path.write_text(header + settings.to_toml(), encoding="utf-8")
    print(f"Created {path}")

    return EXIT_OK


def show_config_sources() -> int:
    """Show configuration file sources and their status.

    Returns
    -------
    int
        Exit code.
    """
    from .config import _user_config_file

    sources: list[tuple[str, Path | None]] = [
        ("Built-in defaults", None),
        ("pyproject.toml [tool.malauth]", Path("pyproject.toml")),
        ("./malauth.toml", Path("malauth.toml")),
        ("User config", _user_config_file()),
    ]
    env_file = os.environ.get("MALAUTH_CONFIG_FILE")
    if env_file:
        sources.append(("MALAUTH_CONFIG_FILE", Path(env_file).expanduser()))

    print("Configuration Sources (in order of precedence):\n")
    print(f"{'Source':<32} {'Status':<12} {'Path'}")
    print("-" * 80)

    for name, path in sources:
        if path is None:
            print(f"{name:<32} {'active':<12}")
            continue
        status = "found" if path.exists() else "not found"
        print(f"{name:<32} {status:<12} {path}")

    env_vars = sorted(k for k in os.environ if k.startswith("MALAUTH_"))
    status = f"{len(env_vars)} vars" if env_vars else "none"
    shown = ", ".join(env_vars[:3]) + ("..." if len(env_vars) > 3 else "")
    print(f"{'Environment variables':<32} {status:<12} {shown}")

    return EXIT_OK


if __name__ == "__main__":
    sys.exit(main())
