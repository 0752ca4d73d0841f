from __future__ import annotations

import argparse
import asyncio
import contextlib
import json
import signal
import sys
from typing import Any, Dict, Optional

from dploy.cancel import CancelToken
from dploy.config import Settings, get_settings
from dploy.logger import configure_logging, get_logger, token_hint
from dploy.metrics import write_metrics
from dploy.services.backplane import BackplaneClient
from dploy.services.orchestrator import DockerOrchestrator
from dploy.services.rollout import RolloutController, RolloutRequest
from dploy.services.shaper import default_plan, plan_from_percentages
from dploy.utils import parse_duration

_logger = get_logger("cli")


def _print_json(data: Any) -> None:
    print(json.dumps(data, indent=2, sort_keys=True))


def _duration(raw: str) -> float:
    try:
        return parse_duration(raw)
    except ValueError as exc:
        raise argparse.ArgumentTypeError(str(exc)) from exc


def _replica_count(raw: str) -> int:
    try:
        value = int(raw)
    except ValueError as exc:
        raise argparse.ArgumentTypeError(f"invalid replica count {raw!r}") from exc
    if value < 1:
        raise argparse.ArgumentTypeError("replica count must be at least 1")
    return value


def _percentages(raw: str) -> list[int]:
    try:
        values = [int(item) for item in raw.split(",") if item.strip()]
    except ValueError as exc:
        raise argparse.ArgumentTypeError(f"invalid step list {raw!r}") from exc
    if not values:
        raise argparse.ArgumentTypeError("step list is empty")
    return values


def _parse_weights(items: list[str]) -> Dict[str, int]:
    weights: Dict[str, int] = {}
    for item in items:
        if "=" not in item:
            raise RuntimeError(f"Invalid --weight value '{item}'. Expected ROUTE=WEIGHT")
        route_id, raw_weight = item.split("=", 1)
        route_id = route_id.strip()
        if not route_id:
            raise RuntimeError("Route ID cannot be empty")
        try:
            weight = int(raw_weight)
        except ValueError as exc:
            raise RuntimeError(f"Invalid weight for {route_id}: {raw_weight!r}") from exc
        if weight < 0:
            raise RuntimeError(f"Weight for {route_id} must not be negative")
        weights[route_id] = weight
    return weights


def _client(args: argparse.Namespace, settings: Settings) -> BackplaneClient:
    token = args.backplane_token if args.backplane_token is not None else settings.backplane_token
    if not token:
        raise RuntimeError("No routing plane token: pass --backplane-token or set BACKPLANE_TOKEN")
    client = BackplaneClient.from_settings(settings, token=token)
    _logger.debug(
        "cli.client",
        "Using routing plane",
        url=settings.backplane_url,
        token_hint=token_hint(token),
    )
    return client


def _install_signal_handlers(cancel: CancelToken) -> None:
    loop = asyncio.get_running_loop()
    for signum in (signal.SIGINT, signal.SIGTERM):
        # Event loop signal handlers are Unix only.
        with contextlib.suppress(NotImplementedError):
            loop.add_signal_handler(
                signum,
                cancel.cancel,
                f"interrupted by {signal.Signals(signum).name}",
            )


async def _deploy(args: argparse.Namespace, settings: Settings) -> int:
    if not args.service_name:
        raise RuntimeError("--service-name is required")
    if not args.endpoint:
        raise RuntimeError("--endpoint is required")
    if not args.dont_create_service and not args.image:
        raise RuntimeError("--image is required unless --dont-create-service is set")

    pause = args.shape_pause if args.shape_pause is not None else settings.shape_pause_seconds
    if args.steps:
        plan = plan_from_percentages(args.steps, pause_seconds=pause)
    else:
        plan = default_plan(pause_seconds=pause)
    readiness_timeout = (
        args.readiness_timeout
        if args.readiness_timeout is not None
        else settings.readiness_timeout_seconds
    )

    request = RolloutRequest(
        service=args.service_name,
        version=args.tag,
        endpoint=args.endpoint,
        image=args.image or "",
        replicas=args.replica_count,
        route_id=args.route or "",
        create_service=not args.dont_create_service,
        plan=plan,
        poll_seconds=settings.readiness_poll_seconds,
        readiness_timeout_seconds=readiness_timeout,
    )

    client = _client(args, settings)
    cancel = CancelToken()
    _install_signal_handlers(cancel)
    controller = RolloutController(
        client,
        DockerOrchestrator.from_settings(settings),
        cancel=cancel,
    )
    _logger.info("cli.deploy", "In case of emergency, press ^C to stop the rollout")
    try:
        await controller.run(request)
    except Exception:
        _print_json(controller.report.as_dict())
        raise
    _print_json(controller.report.as_dict())
    _logger.info(
        "cli.deploy.complete",
        f"100% of traffic has been shaped over to {controller.report.route_id}",
    )
    return 0


def cmd_deploy(args: argparse.Namespace, settings: Settings) -> int:
    return asyncio.run(_deploy(args, settings))


def cmd_query(args: argparse.Namespace, settings: Settings) -> int:
    snapshot = asyncio.run(_client(args, settings).query())
    _print_json(snapshot.model_dump(mode="json", by_alias=True, exclude={"token"}))
    return 0


def cmd_shape(args: argparse.Namespace, settings: Settings) -> int:
    weights = _parse_weights(args.weight)
    if not weights:
        raise RuntimeError("At least one --weight is required")
    asyncio.run(_client(args, settings).set_weights(args.endpoint, weights))
    _print_json({"endpoint": args.endpoint, "weights": weights})
    return 0


def cmd_token(args: argparse.Namespace, settings: Settings) -> int:
    print(asyncio.run(_client(args, settings).issue_token()))
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="dploy",
        description="Progressive rollouts behind a routing plane",
    )
    parser.add_argument("--backplane-url", help="routing plane base URL (BACKPLANE_URL)")
    parser.add_argument(
        "--backplane-token",
        help="routing plane token, or BACKPLANE_TOKEN from env",
    )
    parser.add_argument("--log-level", help="log level (LOG_LEVEL)")
    parser.add_argument("--log-file", help="also log to this file (LOG_FILE)")
    parser.add_argument(
        "--metrics-file",
        help="write Prometheus metrics here on exit (METRICS_FILE)",
    )

    sub = parser.add_subparsers(dest="command", required=True)

    deploy = sub.add_parser("deploy", help="Create a service and shift traffic to it")
    deploy.add_argument("--image", help="docker image to use for service")
    deploy.add_argument(
        "--replica-count", type=_replica_count, default=1, help="number of replicas to spawn"
    )
    deploy.add_argument("--tag", default="latest", help="image tag to use (software version)")
    deploy.add_argument("--service-name", help="name of the service")
    deploy.add_argument("--endpoint", help="endpoint to route application traffic to")
    deploy.add_argument("--route", help="existing route ID to shape to if it exists already")
    deploy.add_argument(
        "--shape-pause",
        type=_duration,
        help="how long to wait between each step of backend shaping (default 30s)",
    )
    deploy.add_argument(
        "--readiness-timeout",
        type=_duration,
        help="give up waiting for replicas after this long (default: wait forever)",
    )
    deploy.add_argument(
        "--steps",
        type=_percentages,
        help="new route share at each step, e.g. 25,50,75,100",
    )
    deploy.add_argument(
        "--dont-create-service",
        action="store_true",
        help="don't create the service",
    )
    deploy.set_defaults(func=cmd_deploy)

    query = sub.add_parser("query", help="Show endpoints, routes and backends")
    query.set_defaults(func=cmd_query)

    shape = sub.add_parser("shape", help="Set route weights on an endpoint once")
    shape.add_argument("--endpoint", required=True)
    shape.add_argument("--weight", action="append", default=[], help="ROUTE=WEIGHT, repeatable")
    shape.set_defaults(func=cmd_shape)

    token = sub.add_parser("token", help="Issue an agent token for a new backend")
    token.set_defaults(func=cmd_token)

    return parser


def _settings_for(args: argparse.Namespace) -> Settings:
    settings = get_settings()
    overrides: Dict[str, Any] = {}
    for flag, name in (
        ("backplane_url", "backplane_url"),
        ("log_level", "log_level"),
        ("log_file", "log_file"),
        ("metrics_file", "metrics_file"),
    ):
        value: Optional[str] = getattr(args, flag)
        if value is not None:
            overrides[name] = value
    if not overrides:
        return settings
    return Settings(**{**settings.model_dump(), **overrides})


def main(argv: Optional[list[str]] = None) -> None:
    parser = build_parser()
    args = parser.parse_args(argv)
    settings: Optional[Settings] = None
    try:
        settings = _settings_for(args)
        configure_logging(settings.log_level, settings.log_file or None)
        exit_code = args.func(args, settings)
    except Exception as exc:  # noqa: BLE001
        print(f"error: {exc}", file=sys.stderr)
        raise SystemExit(1) from exc
    finally:
        if settings is not None and settings.metrics_file:
            write_metrics(settings.metrics_file)
    raise SystemExit(exit_code)


if __name__ == "__main__":
    main()
