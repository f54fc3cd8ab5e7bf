"""Command-line interface for oauthloop."""

from __future__ import annotations

import argparse
import asyncio
import json
import os
import sys

from pathlib import Path
from typing import TYPE_CHECKING

from .auth import AuthorizationCoordinator, TokenExchangeClient, TokenRefreshClient
from .auth.flow import open_in_system_browser
from .config import _REDACTED, CONFIG_FILE_ENV, user_config_path
from .log import configure, enable_debug


if TYPE_CHECKING:
    from .config import OAuthLoopSettings
    from .handle import AsyncResultHandle
    from .types import TokenSet


def build_parser() -> argparse.ArgumentParser:
    """Build the argument parser for the ``oauthloop`` command."""
    parser = argparse.ArgumentParser(
        prog="oauthloop",
        description="Obtain Google OAuth2 tokens through a loopback redirect",
    )
    parser.add_argument(
        "--verbose",
        "-v",
        action="store_true",
        help="Enable debug logging",
    )

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    # authorize command
    authorize_parser = subparsers.add_parser(
        "authorize",
        help="Run the browser authorization and exchange the code for tokens",
    )
    _add_credential_arguments(authorize_parser)
    authorize_parser.add_argument(
        "--scope",
        type=str,
        default=None,
        help="Space-separated scopes to request (uses config default)",
    )
    authorize_parser.add_argument(
        "--no-browser",
        action="store_true",
        help="Print the authorization URL instead of opening a browser",
    )
    authorize_parser.add_argument(
        "--timeout",
        type=float,
        default=None,
        help="Seconds to wait for the redirect (uses config default)",
    )
    authorize_parser.add_argument(
        "--no-exchange",
        action="store_true",
        help="Print the authorization code and verifier instead of exchanging them",
    )

    # refresh command
    refresh_parser = subparsers.add_parser(
        "refresh",
        help="Obtain a new access token with a refresh token",
    )
    _add_credential_arguments(refresh_parser)
    refresh_parser.add_argument(
        "--refresh-token",
        type=str,
        required=True,
        help="Refresh token from an earlier exchange",
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
        help="Initialize an oauthloop.toml configuration file",
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
        default="oauthloop.toml",
        help="Path for configuration file (default: oauthloop.toml)",
    )

    return parser


def _add_credential_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--client-id",
        type=str,
        default=None,
        help="OAuth2 client ID (uses config default)",
    )
    parser.add_argument(
        "--client-secret",
        type=str,
        default=None,
        help="OAuth2 client secret (uses config default)",
    )


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
    parser = build_parser()
    args = parser.parse_args(argv)

    from .config import get_settings

    settings = get_settings()
    configure(settings.log)
    if args.verbose:
        enable_debug()

    try:
        if args.command == "authorize":
            return handle_authorize(args, settings)
        if args.command == "refresh":
            return handle_refresh(args, settings)
        if args.command == "config":
            return handle_config(args, settings)
        if args.command == "init":
            return handle_init(args, settings)
    except KeyboardInterrupt:
        print("\nCanceled.", file=sys.stderr)
        return 1
    parser.print_help()
    return 0


def announce_url(url: str) -> bool:
    """Print the authorization URL for the user to open manually."""
    print(f"Open this URL in your browser to authorize:\n\n  {url}\n", file=sys.stderr)
    return True


def _credentials(
    args: argparse.Namespace,
    settings: OAuthLoopSettings,
    need_secret: bool,
) -> tuple[str, str] | None:
    client_id = args.client_id or settings.oauth2.client_id
    client_secret = args.client_secret or settings.oauth2.client_secret
    if not client_id:
        print(
            "Error: no client ID. Pass --client-id or set OAUTHLOOP_OAUTH2__CLIENT_ID.",
            file=sys.stderr,
        )
        return None
    if need_secret and not client_secret:
        print(
            "Error: no client secret. Pass --client-secret or set OAUTHLOOP_OAUTH2__CLIENT_SECRET.",
            file=sys.stderr,
        )
        return None
    return client_id, client_secret


def _emit_tokens(handle: AsyncResultHandle[TokenSet]) -> int:
    error = handle.error
    if error is not None:
        print(f"Error: {error}", file=sys.stderr)
        return 1
    print(json.dumps(handle.result.to_dict(), indent=2))
    return 0


def handle_authorize(args: argparse.Namespace, settings: OAuthLoopSettings) -> int:
    """Handle the authorize command.

    Parameters
    ----------
    args : argparse.Namespace
        Parsed command line arguments.
    settings : OAuthLoopSettings
        Loaded settings supplying defaults for omitted arguments.

    Returns
    -------
    int
        Exit code.
    """
    credentials = _credentials(args, settings, need_secret=not args.no_exchange)
    if credentials is None:
        return 1
    return asyncio.run(_authorize(args, settings, *credentials))


async def _authorize(
    args: argparse.Namespace,
    settings: OAuthLoopSettings,
    client_id: str,
    client_secret: str,
) -> int:
    timeout = args.timeout if args.timeout is not None else settings.server.auth_timeout_seconds
    coordinator = AuthorizationCoordinator.from_settings(
        settings,
        client_id=client_id,
        scope=args.scope or settings.oauth2.scopes,
        open_browser=announce_url if args.no_browser else open_in_system_browser,
    )

    with coordinator:
        handle = await coordinator.start(timeout)

    error = handle.error
    if error is not None:
        print(f"Error: {error}", file=sys.stderr)
        return 1

    result = handle.result
    if args.no_exchange:
        output = {
            "authorization_code": result.authorization_code,
            "code_verifier": result.code_verifier,
            "redirect_uri": result.redirect_uri,
        }
        print(json.dumps(output, indent=2))
        return 0

    async with TokenExchangeClient.from_settings(
        settings,
        client_id=client_id,
        client_secret=client_secret,
    ) as client:
        tokens = await client.exchange_result(result)
    return _emit_tokens(tokens)


def handle_refresh(args: argparse.Namespace, settings: OAuthLoopSettings) -> int:
    """Handle the refresh command.

    Parameters
    ----------
    args : argparse.Namespace
        Parsed command line arguments.
    settings : OAuthLoopSettings
        Loaded settings supplying defaults for omitted arguments.

    Returns
    -------
    int
        Exit code.
    """
    credentials = _credentials(args, settings, need_secret=True)
    if credentials is None:
        return 1
    client_id, client_secret = credentials

    async def _refresh() -> int:
        async with TokenRefreshClient.from_settings(
            settings,
            client_id=client_id,
            client_secret=client_secret,
        ) as client:
            tokens = await client.refresh(args.refresh_token)
        return _emit_tokens(tokens)

    return asyncio.run(_refresh())


def handle_config(args: argparse.Namespace, settings: OAuthLoopSettings) -> int:
    """Handle the config command.

    Parameters
    ----------
    args : argparse.Namespace
        Parsed command line arguments.
    settings : OAuthLoopSettings
        The settings to display.

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

    return 0


def handle_init(args: argparse.Namespace, settings: OAuthLoopSettings) -> int:
    """Handle the init command.

    Parameters
    ----------
    args : argparse.Namespace
        Parsed command line arguments.
    settings : OAuthLoopSettings
        Settings written out as the initial file contents.

    Returns
    -------
    int
        Exit code.
    """
    path = Path(args.path)

    if path.exists() and not args.force:
        print(f"Error: {path} already exists. Use --force to overwrite.", file=sys.stderr)
        return 1

    header = """# oauthloop Configuration File
#
# Environment variables can override any setting:
#   OAUTHLOOP_OAUTH2__CLIENT_ID="1234.apps.googleusercontent.com"
#   OAUTHLOOP_SERVER__AUTH_TIMEOUT_SECONDS=300
#   OAUTHLOOP_LOG__LEVEL="DEBUG"
#
# Use nested keys with __ (double underscore) delimiter.
# Keep client_secret out of shared files; prefer the environment variable.

"""
    content = settings.to_toml().replace(f'client_secret = "{_REDACTED}"', '# client_secret = ""')
    path.write_text(header + content, encoding="utf-8")
    print(f"Created {path}")

    return 0


def show_config_sources() -> int:
    """Show configuration file sources and their status.

    Returns
    -------
    int
        Exit code.
    """
    env_file = os.environ.get(CONFIG_FILE_ENV)
    sources: list[tuple[str, str | None]] = [
        ("Built-in defaults", None),
        ("pyproject.toml [tool.oauthloop]", "pyproject.toml"),
        ("./oauthloop.toml", "oauthloop.toml"),
        ("~/.config/oauthloop/config.toml", str(user_config_path())),
        (CONFIG_FILE_ENV, env_file or ""),
    ]

    print("Configuration Sources (in order of precedence):\n")
    print(f"{'Source':<40} {'Status':<15} {'Path'}")
    print("-" * 80)

    for name, path_str in sources:
        if path_str is None:
            status = "✓ Active"
            path_display = ""
        elif not path_str:
            status = "✗ Not set"
            path_display = ""
        else:
            path = Path(path_str).expanduser()
            status = "✓ Found" if path.exists() else "✗ Not found"
            path_display = str(path)
        print(f"{name:<40} {status:<15} {path_display}")

    env_vars = [k for k in os.environ if k.startswith("OAUTHLOOP_") and k != CONFIG_FILE_ENV]
    if env_vars:
        status = f"✓ {len(env_vars)} vars"
        path_display = ", ".join(env_vars[:3])
        if len(env_vars) > 3:
            path_display += "..."
    else:
        status = "✗ No vars"
        path_display = ""
    print(f"{'Environment variables':<40} {status:<15} {path_display}")

    print("\nNote: Later sources override earlier ones.")
    return 0


if __name__ == "__main__":
    sys.exit(main())
