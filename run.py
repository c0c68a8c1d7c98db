#!/usr/bin/env python3
"""
trafficgate - Main CLI entry point
"""
import asyncio
import json
import os
import sys
from dotenv import load_dotenv

# Load environment variables first
load_dotenv()

# Configure logging
from trafficgate.logging_config import configure_logging

json_logging = os.getenv("LOG_FORMAT", "").lower() == "json"
log_level = os.getenv("LOG_LEVEL", "INFO").upper()
configure_logging(level=log_level, json_format=json_logging, log_file=os.getenv("LOG_FILE") or None)

from loguru import logger


def parse_args(args: list[str]) -> tuple[list[str], dict]:
    """Parse command line arguments"""
    remaining_args = []
    options = {
        "json": False,
        "verbose": False,
        "host": None,
        "port": None,
        "no_watch": False,
    }

    i = 0
    while i < len(args):
        arg = args[i]
        if arg == "--json":
            options["json"] = True
        elif arg in ["--verbose", "-v"]:
            options["verbose"] = True
        elif arg == "--host" and i + 1 < len(args):
            i += 1
            options["host"] = args[i]
        elif arg == "--port" and i + 1 < len(args):
            i += 1
            options["port"] = int(args[i])
        elif arg == "--no-watch":
            options["no_watch"] = True
        else:
            remaining_args.append(arg)
        i += 1

    return remaining_args, options


def run_serve(host: str = None, port: int = None, watch_config: bool = True):
    """Run the gate HTTP server"""
    import uvicorn
    from config.settings import settings
    from backend.app.main import create_app
    from trafficgate.logging_config import intercept_stdlib_logging

    intercept_stdlib_logging()
    host = host or settings.gate_host
    port = port or settings.gate_port
    if not settings.gate_target_url:
        logger.warning("GATE_TARGET_URL is not set; allowed visitors will be sent to the fallback URL")

    logger.info(f"Starting gate on {host}:{port}")
    uvicorn.run(create_app(watch_config=watch_config), host=host, port=port, log_config=None)


def run_check_ua(ua: str, as_json: bool = False):
    """Print the User-Agent analysis"""
    from trafficgate.analyzers.user_agent import analyze_user_agent

    analysis = analyze_user_agent(ua)
    if as_json:
        print(json.dumps(analysis.summary(), ensure_ascii=False, indent=2))
        return

    verdict = "CRAWLER" if analysis.is_crawler else ("GENERIC" if analysis.is_empty_or_generic else "BROWSER")
    print(f"\nUser-Agent Score: {analysis.score}/100 [{verdict}]")
    print(f"  Browser: {analysis.browser or '-'} {analysis.browser_version or ''}")
    print(f"  OS: {analysis.os_name or '-'}  Device: {analysis.device_type}")
    if analysis.detected_crawler:
        print(f"  Signature: {analysis.detected_crawler}")
    for item in analysis.inconsistencies:
        print(f"  Inconsistency: {item}")


async def run_demo(as_json: bool = False):
    """Score a synthetic visitor through the full pipeline"""
    import random
    from trafficgate.analyzers.behavior import BehaviorData, MousePoint
    from trafficgate.pipeline import GateEvaluator, GateRequest

    evaluator = GateEvaluator()
    request = GateRequest(
        headers={
            "User-Agent": "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
                          "(KHTML, like Gecko) Chrome/131.0.0.0 Safari/537.36",
            "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8",
            "Accept-Language": "en-US,en;q=0.9",
            "Accept-Encoding": "gzip, deflate, br",
        },
        client_ip="203.0.113.10",
    )
    quick = await evaluator.evaluate_quick(request)
    print(f"Quick: {quick.decision.value} (score={quick.score})")
    if not quick.is_interstitial:
        return

    # Wandering pointer with natural timing jitter
    t, x, y, path = 0.0, 200.0, 300.0, []
    for _ in range(40):
        t += random.uniform(8, 60)
        x += random.uniform(-40, 60)
        y += random.uniform(-35, 35)
        path.append(MousePoint(x, y, t))
    behavior = BehaviorData(mouse_path=tuple(path), total_time_on_page_ms=t + 800, scroll_events=3, click_events=1)
    fingerprint = {
        "canvasHash": "9f3a1c77",
        "webglVendor": "Google Inc. (NVIDIA)",
        "webglRenderer": "ANGLE (NVIDIA, NVIDIA GeForce RTX 3060 Direct3D11 vs_5_0 ps_5_0, D3D11)",
        "screenResolution": "1920x1080",
        "timezone": "UTC",
        "timezoneOffset": 0,
        "plugins": ["PDF Viewer", "Chrome PDF Viewer"],
        "language": "en-US",
        "languages": ["en-US", "en"],
        "platform": "Win32",
        "userAgent": request.user_agent,
    }
    final = await evaluator.evaluate_full(quick.token, behavior, fingerprint, request)
    if as_json:
        print(json.dumps(final.result.summary() if final.result else final.to_response(), indent=2))
    else:
        print(f"Final: {final.decision.value} (score={final.score}) -> {final.redirect_url}")


def print_usage():
    print("""
trafficgate CLI

Usage:
  python run.py <command> [options] [args...]

Commands:
  serve                   Run the gate HTTP server
  check-ua "<ua>"         Analyze a User-Agent string
  demo                    Score a synthetic visitor end to end

Options:
  --host <host>           Bind address (default: GATE_HOST or 0.0.0.0)
  --port <port>           Port (default: GATE_PORT or 8000)
  --no-watch              Do not watch .env for changes
  --json                  Output in JSON format
  --verbose, -v           Verbose logging

Examples:
  python run.py serve --port 8080
  python run.py check-ua "Mozilla/5.0 (compatible; Googlebot/2.1; +http://www.google.com/bot.html)"
  python run.py demo --json

Environment Variables:
  GATE_TARGET_URL             Destination for allowed visitors
  GATE_CHALLENGE_URL          Destination for visitors still in the challenge band
  GATE_BLOCK_URL              Destination for blocked visitors
  GATE_FALLBACK_URL           Used when a destination is unset (default: /)
  GATE_WEIGHT_<SIGNAL>        Weight override: USER_AGENT, HEADERS, BEHAVIOR, FINGERPRINT, NETWORK
  GATE_BLOCK_THRESHOLD        Block at or below (default: 30)
  GATE_CHALLENGE_THRESHOLD    Challenge at or below (default: 60)
  GATE_QUICK_ALLOW_THRESHOLD  Allow without telemetry at or above (default: 90)
  GATE_BLOCK_ON_CRITICAL      Block crawler/headless signals regardless of score (default: true)
  GATE_CAPTURE_WINDOW_MS      Telemetry capture window (default: 5000)
  GATE_REPLAY_LIMIT           Sightings of one fingerprint before it counts as replayed (default: 8)
  GATE_BLOCKED_COUNTRIES      Comma-separated ISO country codes
  GATE_ALLOWED_COUNTRIES      Only these countries skip the challenge (default: all)
  GATE_ALLOWED_DEVICES        Only these device types skip the challenge: desktop, mobile, tablet
  GATE_REQUIRE_FINGERPRINT    Challenge everyone and block missing fingerprints (default: false)
  GATE_MIN_SCORE              Allow only at or above this score (default: 0)
  REDIS_URL                   Shared replay store (default: in-memory)
  LOG_FORMAT                  Logging format: json or text (default: text)
  LOG_LEVEL                   Log level: DEBUG, INFO, WARNING, ERROR (default: INFO)
""")


def main():
    if len(sys.argv) < 2:
        print_usage()
        sys.exit(0)

    command = sys.argv[1].lower()
    args, options = parse_args(sys.argv[2:])

    # Reconfigure logging if --json flag is set
    if options["json"]:
        configure_logging(level=log_level, json_format=True)
    elif options["verbose"]:
        configure_logging(level="DEBUG", json_format=False)

    if command == "serve":
        run_serve(options["host"], options["port"], watch_config=not options["no_watch"])

    elif command == "check-ua":
        if len(args) < 1:
            print("Error: User-Agent string required")
            sys.exit(1)
        run_check_ua(" ".join(args), as_json=options["json"])

    elif command == "demo":
        asyncio.run(run_demo(as_json=options["json"]))

    elif command in ["-h", "--help", "help"]:
        print_usage()

    else:
        print(f"Unknown command: {command}")
        print_usage()
        sys.exit(1)


if __name__ == "__main__":
    main()
