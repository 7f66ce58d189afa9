import argparse
import json
import logging
import os
import sys
from pathlib import Path


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="projectflow", description="Realtime kanban and messenger server")
    parser.add_argument("--host", default="127.0.0.1", help="Host (default: 127.0.0.1)")
    parser.add_argument("--port", type=int, default=8431, help="Port (default: 8431)")
    parser.add_argument("--db", default=None, help="SQLite database path (default: ~/.projectflow/projectflow.db)")
    parser.add_argument("--keepalive", type=float, default=None, help="Keep-alive interval in seconds (default: 10)")
    parser.add_argument("--send-timeout", type=float, default=None, help="WebSocket send timeout in seconds (default: 30)")
    parser.add_argument("--jwt-secret", default=None, help="HMAC secret for client tokens (default: $PROJECTFLOW_JWT_SECRET)")

    subparsers = parser.add_subparsers(dest="command")
    token_parser = subparsers.add_parser("token", help="Print a signed token for a user")
    token_parser.add_argument("--user", required=True, help="User id to put in the token")
    token_parser.add_argument("--type", default="default", choices=["default", "curator"], help="User type (default: default)")
    token_parser.add_argument("--ttl", type=float, default=None, help="Token lifetime in seconds (default: no expiry)")

    member_parser = subparsers.add_parser("member", help="Manage project membership")
    member_sub = member_parser.add_subparsers(dest="member_command", required=True)
    member_add = member_sub.add_parser("add", help="Give a user access to a project's REST API")
    member_add.add_argument("--project", type=int, required=True, help="Project id")
    member_add.add_argument("--user", required=True, help="User id")

    config_parser = subparsers.add_parser("config", help="Persist server settings")
    config_sub = config_parser.add_subparsers(dest="config_command", required=True)
    config_set = config_sub.add_parser("set", help="Store a setting; the server reads settings on start")
    config_set.add_argument("key", help="Setting key, e.g. realtime.queue_size")
    config_set.add_argument("value", help="JSON value, e.g. 64 or '[\"HS256\"]'")

    return parser


def _db_path(args) -> Path | None:
    return Path(args.db).expanduser() if args.db else None


def add_member(args) -> None:
    from .server.store import ProjectStore

    store = ProjectStore(_db_path(args))
    store.add_member(args.project, args.user)
    print(f"{args.user} is a member of project {args.project}")


def set_config(args) -> None:
    from .server.settings import SettingsStore, UnknownSettingError

    try:
        value = json.loads(args.value)
    except json.JSONDecodeError:
        print(f"error: value must be JSON: {args.value}", file=sys.stderr)
        sys.exit(2)
    settings = SettingsStore(_db_path(args))
    try:
        settings.set(args.key, value)
    except UnknownSettingError as exc:
        print(f"error: {exc.args[0]}", file=sys.stderr)
        sys.exit(2)
    print(f"{args.key} = {json.dumps(value)} (applies on next start)")


def main():
    args = build_parser().parse_args()

    if args.command == "member":
        add_member(args)
        return
    if args.command == "config":
        set_config(args)
        return

    from .server.app import JWT_SECRET_ENV

    secret = args.jwt_secret or os.environ.get(JWT_SECRET_ENV, "")
    if not secret:
        print(f"error: a JWT secret is required (--jwt-secret or ${JWT_SECRET_ENV})", file=sys.stderr)
        sys.exit(2)

    if args.command == "token":
        from .domain.identity import JwtIdentityResolver
        from .domain.models import UserType

        resolver = JwtIdentityResolver(secret)
        print(resolver.issue(args.user, UserType(args.type), ttl=args.ttl))
        return

    log = logging.getLogger("projectflow")
    log.setLevel(logging.DEBUG)
    fmt = logging.Formatter("%(asctime)s %(levelname)s %(message)s")
    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(logging.INFO)
    handler.setFormatter(fmt)
    log.addHandler(handler)

    import uvicorn
    from .server.app import create_app
    from .server.store import ProjectStore

    store = ProjectStore(_db_path(args))
    app = create_app(
        store=store,
        jwt_secret=secret,
        keepalive_interval=args.keepalive,
        send_timeout=args.send_timeout,
    )
    print(f"  Local:   http://localhost:{args.port}")
    print(f"  Socket:  ws://localhost:{args.port}/project")
    print()
    log.info(
        "starting projectflow db=%s keepalive=%s send_timeout=%s",
        store.db_path,
        args.keepalive if args.keepalive is not None else "default",
        args.send_timeout if args.send_timeout is not None else "default",
    )
    uvicorn.run(app, host=args.host, port=args.port, log_level="warning", log_config=None)


if __name__ == "__main__":
    main()
