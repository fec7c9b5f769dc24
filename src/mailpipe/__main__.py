# SPDX-License-Identifier: GPL-2.0-only
# Copyright (C) 2025 Mailpipe contributors
"""
Mailpipe - Provisioning toolkit for the email-processing pipeline.

Command line interface of the encrypted secret store.
"""

from __future__ import annotations

import argparse
import logging
import os
import sys
from collections.abc import Callable, Mapping, Sequence
from pathlib import Path
from typing import NoReturn

from mailpipe import __version__
from mailpipe.config.config import Config, ConfigError
from mailpipe.config.secrets import SecretsConfiguration, SecretStore, serialize_secrets
from mailpipe.config.secrets_context import InvocationContext, Verbosity
from mailpipe.config.secrets_errors import RequiredValueMissingError, SecretNotFoundError, SecretsError
from mailpipe.config.secrets_recipients import RecipientChange
from mailpipe.config.secrets_resolver import ConfigResolver

DEFAULT_CONFIG_FILE = "mailpipe.yaml"


def parse_arguments(argv: Sequence[str] | None = None) -> argparse.Namespace:
    """
    Parse command line arguments.

    Args:
        argv: Arguments to parse (sys.argv[1:] if None)

    Returns:
        Parsed arguments namespace
    """
    parser = argparse.ArgumentParser(
        prog="mailpipe-secrets",
        description="Mailpipe - encrypted, multi-recipient secret store for the email pipeline",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Environment Variables:
  SOPS_AGE_KEY                   Private key value (e.g. injected in CI)
  SOPS_AGE_KEY_FILE              Path of a private key file
  MAILPIPE_SECRETS__<KEY>        Overrides secrets.<key> in the config file
  VISUAL / EDITOR                Editor used by 'edit'

Examples:
  mailpipe-secrets init
  mailpipe-secrets set SERVER_IP 203.0.113.10
  mailpipe-secrets get SERVER_IP
  mailpipe-secrets add-recipient mpk1...
  mailpipe-secrets import-env .env
  SERVER_IP=$(mailpipe-secrets -q resolve SERVER_IP --prompt "Enter Server IP address" \\
                --error-if-empty "SERVER_IP is required")
        """,
    )

    parser.add_argument(
        "-c",
        "--config",
        type=str,
        default=None,
        help=f"Path to configuration file (default: {DEFAULT_CONFIG_FILE}, optional)",
    )

    verbosity = parser.add_mutually_exclusive_group()
    verbosity.add_argument(
        "-q",
        "--quiet",
        action="store_true",
        help="Suppress progress and confirmation messages",
    )
    verbosity.add_argument(
        "--verbose",
        action="store_true",
        help="Show extra diagnostic output",
    )

    parser.add_argument(
        "-v",
        "--version",
        action="version",
        version=f"Mailpipe version {__version__}",
        help="Show version information and exit",
    )

    subparsers = parser.add_subparsers(dest="command", metavar="<command>", required=True)

    get_parser = subparsers.add_parser("get", help="Get a secret value")
    get_parser.add_argument("key")

    set_parser = subparsers.add_parser("set", help="Set a secret value")
    set_parser.add_argument("key")
    set_parser.add_argument("value")

    delete_parser = subparsers.add_parser("delete", aliases=["unset"], help="Delete a secret")
    delete_parser.add_argument("key")

    subparsers.add_parser("list", help="List all secret keys")
    subparsers.add_parser("dump", help="Dump all secrets (decrypted)")

    edit_parser = subparsers.add_parser("edit", help="Edit all secrets in an editor")
    edit_parser.add_argument("--editor", default=None, help="Editor command (default: $VISUAL, $EDITOR, nano, vi)")

    recipient_parser = subparsers.add_parser("add-recipient", help="Add a recipient public key")
    recipient_parser.add_argument("public_key")

    import_parser = subparsers.add_parser("import-env", help="Import KEY=value lines from an env file")
    import_parser.add_argument("env_file", nargs="?", default=".env", help="Env file to import (default: .env)")
    import_parser.add_argument(
        "--only",
        action="append",
        default=None,
        metavar="KEY",
        help="Import only this key (repeatable)",
    )

    subparsers.add_parser("init", help="Create keypair, recipient policy and secret document")
    subparsers.add_parser("public-key", help="Print this trust domain's public key")

    resolve_parser = subparsers.add_parser(
        "resolve",
        help="Resolve a configuration value (environment, secrets, default, prompt)",
    )
    resolve_parser.add_argument("name")
    resolve_parser.add_argument("--prompt", default="", help="Prompt shown in interactive mode")
    resolve_parser.add_argument(
        "--error-if-empty",
        default="",
        help="Error message when no value is available (value is optional if omitted)",
    )
    resolve_parser.add_argument("--default", default=None, help="Default value")
    resolve_parser.add_argument("--secret", action="store_true", help="Hide typed input")

    return parser.parse_args(argv)


def load_settings(config_path: str | None, environ: Mapping[str, str]) -> SecretsConfiguration:
    """
    Load secret store settings.

    The default configuration file is optional; an explicitly named one
    must exist.

    Args:
        config_path: Path given with --config, or None
        environ: Environment lookup for MAILPIPE_ overrides

    Returns:
        SecretsConfiguration
    """
    config = Config(
        config_file=config_path or DEFAULT_CONFIG_FILE,
        env_prefix="MAILPIPE_",
        environ=environ,
    )
    config.load(missing_ok=config_path is None)
    return SecretsConfiguration.from_config(config)


def confirm(context: InvocationContext, message: str) -> None:
    """Print a confirmation line on stdout unless quiet."""
    if not context.quiet:
        print(f"✓ {message}")


def prompt_on_stderr(text: str) -> str:
    """Read a line from stdin, showing the prompt on stderr so stdout stays clean."""
    print(text, end="", file=sys.stderr, flush=True)
    line = sys.stdin.readline()
    if not line:
        raise EOFError
    return line.rstrip("\n")


# Command handlers


def cmd_get(store: SecretStore, args: argparse.Namespace, context: InvocationContext) -> int:
    print(store.get(args.key))
    return 0


def cmd_set(store: SecretStore, args: argparse.Namespace, context: InvocationContext) -> int:
    store.set(args.key, args.value)
    confirm(context, f"Set {args.key}")
    return 0


def cmd_delete(store: SecretStore, args: argparse.Namespace, context: InvocationContext) -> int:
    if not store.delete(args.key):
        raise SecretNotFoundError(args.key)
    confirm(context, f"Deleted {args.key}")
    return 0


def cmd_list(store: SecretStore, args: argparse.Namespace, context: InvocationContext) -> int:
    for key in store.list_keys():
        print(key)
    return 0


def cmd_dump(store: SecretStore, args: argparse.Namespace, context: InvocationContext) -> int:
    print(serialize_secrets(store.dump()).decode("utf-8"), end="")
    return 0


def cmd_edit(store: SecretStore, args: argparse.Namespace, context: InvocationContext) -> int:
    changed = store.edit(editor=args.editor)
    if changed:
        confirm(context, f"Secrets updated and encrypted successfully ({', '.join(changed)})")
    else:
        context.info("No changes")
    return 0


def cmd_add_recipient(store: SecretStore, args: argparse.Namespace, context: InvocationContext) -> int:
    reencrypt = store.exists()
    change = store.add_recipient(args.public_key)
    if change is RecipientChange.ALREADY_PRESENT:
        confirm(context, f"Public key already in {store.registry.policy_file}")
        return 0

    confirm(context, f"Added recipient to {store.registry.policy_file}")
    if reencrypt:
        confirm(context, f"Re-encrypted {store.document_file} for all recipients")
    return 0


def cmd_import_env(store: SecretStore, args: argparse.Namespace, context: InvocationContext) -> int:
    changed = store.import_env(Path(args.env_file), keys=args.only)
    for key in changed:
        confirm(context, f"Updated {key}")
    if changed:
        confirm(context, f"Imported {len(changed)} secret(s) from {args.env_file}")
    else:
        context.info(f"No secrets were updated from {args.env_file}")
    return 0


def cmd_init(store: SecretStore, args: argparse.Namespace, context: InvocationContext) -> int:
    store.ensure_document()
    identity = store.keystore.load_active_key()
    confirm(context, f"Secret store ready at {store.document_file}")
    print(f"Public key: {identity.public_id}")
    return 0


def cmd_public_key(store: SecretStore, args: argparse.Namespace, context: InvocationContext) -> int:
    print(store.keystore.load_active_key().public_id)
    return 0


def cmd_resolve(store: SecretStore, args: argparse.Namespace, context: InvocationContext) -> int:
    resolver = ConfigResolver(store, environ=store.environ, context=context, prompt=prompt_on_stderr)
    resolved = resolver.resolve(
        args.name,
        prompt_text=args.prompt,
        error_if_empty=args.error_if_empty,
        default=args.default,
        secret=args.secret,
    )
    context.detail(f"{args.name} resolved from {resolved.source.value}")
    print(resolved.value)
    return 0


COMMANDS: dict[str, Callable[[SecretStore, argparse.Namespace, InvocationContext], int]] = {
    "get": cmd_get,
    "set": cmd_set,
    "delete": cmd_delete,
    "unset": cmd_delete,
    "list": cmd_list,
    "dump": cmd_dump,
    "edit": cmd_edit,
    "add-recipient": cmd_add_recipient,
    "import-env": cmd_import_env,
    "init": cmd_init,
    "public-key": cmd_public_key,
    "resolve": cmd_resolve,
}


def main(argv: Sequence[str] | None = None) -> int:
    """
    Main entry point for the secrets command line.

    Returns:
        Exit code (0 for success, non-zero for failure)
    """
    args = parse_arguments(argv)

    # The process environment is read once, here
    environ = dict(os.environ)

    if args.quiet:
        verbosity = Verbosity.QUIET
    elif args.verbose:
        verbosity = Verbosity.VERBOSE
        logging.basicConfig(level=logging.DEBUG, format="%(levelname)s %(name)s: %(message)s")
    else:
        verbosity = Verbosity.NORMAL
    context = InvocationContext.from_environ(environ, verbosity=verbosity)

    try:
        settings = load_settings(args.config, environ)
        store = SecretStore(settings, environ=environ, context=context)
        return COMMANDS[args.command](store, args, context)

    except RequiredValueMissingError as err:
        print(f"Error: {err}", file=sys.stderr)
        return 1

    except SecretNotFoundError as err:
        print(f"Error: {err}", file=sys.stderr)
        return 1

    except SecretsError as err:
        print(f"Error: {err}", file=sys.stderr)
        return 1

    except ConfigError as err:
        print(f"Error: Configuration error: {err}", file=sys.stderr)
        return 1

    except KeyboardInterrupt:
        print("\nInterrupted by user", file=sys.stderr)
        return 130

    except Exception as err:
        print(f"Error: Unexpected error: {err}", file=sys.stderr)
        import traceback

        traceback.print_exc()
        return 1


def run() -> NoReturn:
    """
    Run the application and exit with appropriate code.

    This is used by the console script entry point.
    """
    sys.exit(main())


if __name__ == "__main__":
    run()
