from __future__ import annotations

import argparse
import copy
import logging.config
import os

import anyio
import uvicorn
import uvicorn.config

from consult_dispatch.core.config.settings import Settings, get_settings


def _build_log_config(settings: Settings) -> dict:
    # Uvicorn's default LOGGING_CONFIG does not attach handlers to the `consult_dispatch.*` logger namespace.
    config = copy.deepcopy(uvicorn.config.LOGGING_CONFIG)
    loggers = config.setdefault("loggers", {})
    loggers["consult_dispatch"] = {
        "handlers": ["default"],
        "level": settings.log_level.upper(),
        "propagate": False,
    }
    return config


def _parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Run the consult-dispatch API server or a one-off dispatch run.")
    parser.add_argument("--host", default=os.getenv("HOST", "127.0.0.1"))
    parser.add_argument("--port", type=int, default=int(os.getenv("PORT", "8080")))

    subparsers = parser.add_subparsers(dest="command")

    run = subparsers.add_parser("run", help="Run one dispatch pass for a provider and print the summary as JSON.")
    run.add_argument("provider")

    reclaim = subparsers.add_parser(
        "reclaim-stale",
        help="Move jobs stuck in processing back to pending.",
    )
    reclaim.add_argument("provider")
    reclaim.add_argument(
        "--minutes",
        type=int,
        required=True,
        help="Only jobs untouched for longer than this many minutes are reclaimed.",
    )

    return parser.parse_args()


def _configure_logging(settings: Settings) -> None:
    logging.config.dictConfig(_build_log_config(settings))


def main() -> None:
    args = _parse_args()
    settings = get_settings()

    if args.command is None:
        uvicorn.run(
            "consult_dispatch.main:app",
            host=args.host,
            port=args.port,
            log_config=_build_log_config(settings),
            access_log=settings.access_log_enabled,
        )
        return

    _configure_logging(settings)

    if args.command == "run":
        from consult_dispatch.core.clients.http import close_http_client, init_http_client
        from consult_dispatch.core.errors import DispatchError, LockBusyError
        from consult_dispatch.core.metrics import get_metrics
        from consult_dispatch.db.session import SessionLocal, close_db, init_db
        from consult_dispatch.modules.providers.registry import get_provider_registry, register_configured_adapters
        from consult_dispatch.modules.runs.service import RunsService

        async def _run() -> int:
            try:
                await init_db()
                await init_http_client()
                registry = get_provider_registry()
                register_configured_adapters(registry, settings)
                service = RunsService(
                    registry,
                    session_factory=SessionLocal,
                    settings=settings,
                    metrics=get_metrics(),
                )
                try:
                    summary = await service.run(args.provider)
                except LockBusyError:
                    print('{"ok": false, "message": "Another run is already in progress"}')
                    return 2
                except DispatchError as exc:
                    raise SystemExit(str(exc)) from exc
                print(summary.model_dump_json(indent=2))
                return 0 if summary.ok else 1
            finally:
                try:
                    await close_http_client()
                finally:
                    await close_db()

        exit_code = anyio.run(_run)
        if exit_code:
            raise SystemExit(exit_code)
        return

    if args.command == "reclaim-stale":
        from consult_dispatch.db.session import SessionLocal, close_db, init_db
        from consult_dispatch.modules.jobs.repository import JobsRepository
        from consult_dispatch.modules.jobs.service import JobsService
        from consult_dispatch.modules.providers.registry import get_provider_registry

        async def _reclaim() -> None:
            if args.minutes <= 0:
                raise SystemExit("--minutes must be > 0")
            profile = get_provider_registry().profile(args.provider)
            try:
                await init_db()
                async with SessionLocal() as session:
                    reclaimed = await JobsService(JobsRepository(session)).reclaim_stale(
                        profile.name,
                        minutes=args.minutes,
                    )
                print(f"reclaimed={reclaimed} provider={profile.name} minutes={args.minutes}")
            finally:
                await close_db()

        anyio.run(_reclaim)
        return

    raise SystemExit(f"Unknown command: {args.command}")


if __name__ == "__main__":
    main()
