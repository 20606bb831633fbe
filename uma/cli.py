"""UMA CLI: run the telemetry hub or inspect a running one."""

import argparse
import sys

DEFAULT_HOST = "127.0.0.1"
DEFAULT_PORT = 8043


def main(argv=None):
    parser = argparse.ArgumentParser(
        prog="uma",
        description="UMA: unified telemetry collection and caching hub",
    )
    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    # Hub serve command
    serve_parser = subparsers.add_parser("serve", help="Start the telemetry hub")
    serve_parser.add_argument("--port", type=int, default=DEFAULT_PORT, help=f"Port (default: {DEFAULT_PORT})")
    serve_parser.add_argument("--host", default=DEFAULT_HOST, help=f"Host (default: {DEFAULT_HOST})")
    serve_parser.add_argument("--probes", default=None, help="JSON probe file to register at startup")
    serve_parser.add_argument("--verbose", action="store_true", help="Enable DEBUG logging")
    serve_parser.add_argument("--quiet", action="store_true", help="Only show WARNING and above")

    # Status command
    status_parser = subparsers.add_parser("status", help="Show UMA hub status")
    status_parser.add_argument("--port", type=int, default=DEFAULT_PORT, help=f"Port (default: {DEFAULT_PORT})")
    status_parser.add_argument("--host", default=DEFAULT_HOST, help=f"Host (default: {DEFAULT_HOST})")
    status_parser.add_argument("--json", action="store_true", dest="json_output", help="Output as JSON")

    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        sys.exit(1)

    _dispatch(args)


def _dispatch(args):
    """Route CLI commands to hub functions."""
    if args.command == "serve":
        log_level = "INFO"
        if args.verbose:
            log_level = "DEBUG"
        elif args.quiet:
            log_level = "WARNING"
        _serve(args.host, args.port, args.probes, log_level)

    elif args.command == "status":
        _status(args.host, args.port, json_output=args.json_output)

    else:
        print(f"Unknown command: {args.command}")
        sys.exit(1)


def _serve(host: str, port: int, probes_path: str | None = None, log_level: str = "INFO"):
    """Start the UMA telemetry hub."""
    import asyncio
    import logging

    logging.basicConfig(
        level=getattr(logging, log_level),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
    logger = logging.getLogger("uma.serve")

    import uvicorn

    from uma.hub.api import create_api
    from uma.hub.config import HubConfig
    from uma.hub.core import TelemetryHub
    from uma.probes import load_probe_file

    async def start():
        hub = TelemetryHub(HubConfig.from_env())

        if probes_path:
            for key, probe, options in load_probe_file(probes_path):
                hub.register_probe(key, probe, **options)
            logger.info(f"Loaded {len(hub.collector.keys())} probe(s) from {probes_path}")
        else:
            logger.warning("No probe file given; the hub will serve nothing until probes are registered")

        await hub.initialize()

        app = create_api(hub)

        config = uvicorn.Config(
            app,
            host=host,
            port=port,
            log_level=log_level.lower(),
            access_log=(log_level != "WARNING"),
        )
        server = uvicorn.Server(config)

        try:
            await server.serve()
        finally:
            if hub.is_running():
                await hub.shutdown()

    asyncio.run(start())


def _status(host: str = DEFAULT_HOST, port: int = DEFAULT_PORT, json_output: bool = False):
    """Show UMA hub status from a running hub's /health endpoint."""
    import json
    import urllib.error
    import urllib.request

    from uma import __version__

    result = {
        "version": __version__,
        "hub_running": False,
        "hub_health": None,
    }

    try:
        req = urllib.request.Request(f"http://{host}:{port}/health", method="GET")
        with urllib.request.urlopen(req, timeout=2) as resp:
            result["hub_health"] = json.loads(resp.read())
            result["hub_running"] = True
    except (urllib.error.URLError, OSError, ValueError) as e:
        result["error"] = str(e)

    if json_output:
        print(json.dumps(result, indent=2))
        return

    print(f"UMA v{__version__}")
    if not result["hub_running"]:
        print(f"  Hub:              not running ({host}:{port})")
        return

    health = result["hub_health"]
    print(f"  Hub:              {health.get('status', 'unknown')} ({host}:{port})")
    uptime = health.get("uptime_seconds", 0)
    hours, remainder = divmod(int(uptime), 3600)
    minutes, secs = divmod(remainder, 60)
    print(f"  Uptime:           {hours}h {minutes}m {secs}s")
    probes = health.get("probes", {})
    failing = [key for key, p in probes.items() if p.get("status") == "error"]
    print(f"  Probes:           {len(probes) - len(failing)}/{len(probes)} healthy")
    for key in failing:
        print(f"    {key}: {probes[key].get('last_error')}")
    print(f"  Subscriptions:    {health.get('subscriptions', 0)}")


if __name__ == "__main__":
    main()
