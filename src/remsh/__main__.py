"""
CLI interface for remsh.

Usage:
    remsh user@host                        # Interactive shell
    remsh user@host uptime                 # Execute command
    remsh -p 2222 -i ~/.ssh/deploy user@host
    remsh -L 8080:localhost:80 user@host   # Local forward
    remsh --ssm-secret-path /prod/ssh/key user@host
    remsh -o ServerAliveInterval=15 -o ConnectionAttempts=3 host
    remsh --event-log session.jsonl user@host
    python -m remsh --help
"""
from __future__ import annotations

import argparse
import asyncio
import logging
import sys

from remsh import __version__
from remsh.auth import AuthenticationChain
from remsh.config import ResolvedConfig, SSHConfig, resolve_config
from remsh.connection import AsyncSSHTransport
from remsh.errors import RemshError
from remsh.events import EventEmitter
from remsh.forwarding import parse_forward_spec
from remsh.multiplexer import SessionChannelMultiplexer
from remsh.secret_store import SecretFetcher, SSMParameterFetcher
from remsh.secure_string import SecureString
from remsh.supervisor import ConnectionSupervisor

logger = logging.getLogger("remsh")

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"


def parse_target(target: str) -> tuple[str, str | None]:
    """
    Parse user@host target string.

    Returns:
        Tuple of (host, username) where username may be None.
    """
    if "@" in target:
        username, host = target.rsplit("@", 1)
        return host, username or None
    return target, None


def create_parser() -> argparse.ArgumentParser:
    """Create the argument parser for the remsh CLI."""
    parser = argparse.ArgumentParser(
        prog="remsh",
        description="Interactive remote shell client",
        epilog="Example: remsh user@host 'echo hello'",
    )

    parser.add_argument(
        "target",
        metavar="[user@]host",
        help="Target host (optionally with username)",
    )

    parser.add_argument(
        "command",
        nargs=argparse.REMAINDER,
        help="Command to execute on remote host (default: interactive shell)",
    )

    parser.add_argument(
        "-p", "--port",
        type=int,
        default=None,
        help="SSH port (default: from config file, else 22)",
    )

    parser.add_argument(
        "-l", "--login",
        metavar="USER",
        help="Login username (alternative to user@host)",
    )

    key_source = parser.add_mutually_exclusive_group()
    key_source.add_argument(
        "-i", "--identity",
        metavar="FILE",
        help="Private key file for authentication",
    )
    key_source.add_argument(
        "--ssm-secret-path",
        metavar="NAME",
        help="Fetch the private key from this AWS SSM parameter",
    )

    parser.add_argument(
        "--aws-region",
        metavar="REGION",
        help="AWS region for --ssm-secret-path (default: AWS_REGION, "
             "AWS_DEFAULT_REGION, then us-east-1)",
    )

    parser.add_argument(
        "--aws-access-key-id",
        metavar="ID",
        help="AWS access key id for --ssm-secret-path",
    )

    parser.add_argument(
        "--aws-secret-access-key",
        metavar="SECRET",
        help="AWS secret access key for --ssm-secret-path",
    )

    parser.add_argument(
        "-A", "--no-agent",
        action="store_true",
        help="Do not try the SSH agent",
    )

    parser.add_argument(
        "-L", "--local-forward",
        action="append",
        metavar="SPEC",
        dest="local_forward",
        help="Local port forward: local_port:remote_host:remote_port "
             "(can be repeated)",
    )

    parser.add_argument(
        "-o", "--option",
        action="append",
        metavar="KEY=VALUE",
        dest="options",
        help="Config option, e.g. -o ServerAliveInterval=15 (can be repeated)",
    )

    parser.add_argument(
        "-F", "--config-file",
        metavar="FILE",
        dest="config_file",
        help="Use this config file instead of ~/.ssh/config",
    )

    parser.add_argument(
        "--no-known-hosts",
        action="store_true",
        help="Disable host key checking (INSECURE)",
    )

    parser.add_argument(
        "--event-log",
        metavar="PATH",
        help="Write structured JSONL events to PATH",
    )

    parser.add_argument(
        "-d", "--debug",
        action="store_true",
        help="Debug logging to stderr",
    )

    parser.add_argument(
        "-V", "--version",
        action="version",
        version=f"%(prog)s {__version__}",
    )

    return parser


def configure_logging(debug: bool) -> None:
    """Log to stderr: DEBUG with -d, WARNING otherwise."""
    logging.basicConfig(
        level=logging.DEBUG if debug else logging.WARNING,
        format=LOG_FORMAT,
        stream=sys.stderr,
    )
    # asyncssh logs every channel at INFO
    logging.getLogger("asyncssh").setLevel(logging.INFO if debug else logging.WARNING)


def build_config(args: argparse.Namespace) -> ResolvedConfig:
    """
    Resolve the session configuration from parsed arguments.

    Raises:
        ConfigError: On an invalid flag, option, forward spec or config value
    """
    host, target_user = parse_target(args.target)
    forwards = tuple(parse_forward_spec(spec) for spec in args.local_forward or [])
    ssh_config = SSHConfig(config_files=[args.config_file]) if args.config_file else None

    return resolve_config(
        host,
        port=args.port,
        username=args.login or target_user,
        identity=args.identity,
        no_agent=args.no_agent,
        forwards=forwards,
        options=args.options,
        ssh_config=ssh_config,
        debug=args.debug,
        skip_host_key_check=args.no_known_hosts,
    )


def create_fetcher(args: argparse.Namespace) -> SecretFetcher:
    return SSMParameterFetcher(
        region=args.aws_region,
        access_key_id=args.aws_access_key_id,
        secret_access_key=args.aws_secret_access_key,
    )


async def run_session(
    config: ResolvedConfig,
    command: str | None,
    key_data: SecureString | None,
    emitter: EventEmitter,
) -> int:
    """
    Connect and run the shell or command.

    Returns:
        Exit code of the remote command (0 for a shell)
    """
    multiplexer = SessionChannelMultiplexer(command, emitter=emitter)
    supervisor = ConnectionSupervisor(
        config,
        AsyncSSHTransport(config.username),
        multiplexer,
        auth_chain=AuthenticationChain(config, key_data=key_data, emitter=emitter),
        emitter=emitter,
    )
    return await supervisor.run()


def main(argv: list[str] | None = None) -> int:
    """CLI entry point."""
    parser = create_parser()
    args = parser.parse_args(argv)
    configure_logging(args.debug)

    command = " ".join(args.command) if args.command else None
    key_data: SecureString | None = None
    emitter: EventEmitter | None = None

    try:
        config = build_config(args)

        if args.ssm_secret_path:
            key_data = create_fetcher(args).fetch(args.ssm_secret_path)

        emitter = EventEmitter(jsonl_path=args.event_log)
        return asyncio.run(run_session(config, command, key_data, emitter))
    except RemshError as e:
        logger.debug("Fatal %s", e.error_type, exc_info=True)
        print(f"Error: {e}", file=sys.stderr)
        return 1
    except OSError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    except KeyboardInterrupt:
        return 130
    finally:
        if key_data is not None:
            key_data.eradicate()
        if emitter is not None:
            emitter.close()


if __name__ == "__main__":
    sys.exit(main())
