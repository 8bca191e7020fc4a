from __future__ import annotations

import argparse
import dataclasses
import logging
import os
import signal
import sys
import threading
from pathlib import Path

from ..client import (
    DEFAULT_BASE_URL,
    DEFAULT_CLIENT_CERT,
    DEFAULT_CLIENT_KEY,
    EncryptionServiceClient,
    ServiceUnavailableError,
    TransportSettings,
    wait_for_service,
)
from .charts import render_result_charts
from .config import ConfigurationError, LoadTestConfig, default_profiles, format_duration, load_config
from .cycle import FAILURE_LOGGER_NAME
from .report import format_summary, write_samples_csv, write_summary_json
from .runner import LoadTestRunner, client_factory_for

LOGGER = logging.getLogger("hsm_loadtest.harness")

EXIT_PASS = 0
EXIT_THRESHOLD_BREACH = 1
EXIT_CONFIG_ERROR = 2

_TRUTHY = {"1", "true", "yes", "on"}


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="HSM encryption service load test")
    parser.add_argument("--base-url", default=os.environ.get("HSM_URL", DEFAULT_BASE_URL))
    parser.add_argument(
        "--client-cert",
        default=os.environ.get("CLIENT_CERT", DEFAULT_CLIENT_CERT),
        help="Client certificate (PEM) presented for mutual TLS",
    )
    parser.add_argument(
        "--client-key",
        default=os.environ.get("CLIENT_KEY", DEFAULT_CLIENT_KEY),
        help="Private key (PEM) matching --client-cert",
    )
    parser.add_argument(
        "--ca-bundle",
        default=os.environ.get("HSM_CA_BUNDLE"),
        help="CA bundle used to verify the service certificate",
    )
    parser.add_argument(
        "--insecure",
        action="store_true",
        default=os.environ.get("HSM_INSECURE_SKIP_VERIFY", "").lower() in _TRUTHY,
        help="Skip server certificate verification (self-signed lab certificates)",
    )
    parser.add_argument(
        "--profile",
        default=os.environ.get("LOADTEST_PROFILE", "full"),
        choices=sorted(default_profiles()),
        help="Built-in ramp profile and thresholds",
    )
    parser.add_argument(
        "--config",
        default=os.environ.get("LOADTEST_CONFIG"),
        help="YAML file overriding stages, thresholds and pacing of the profile",
    )
    parser.add_argument("--context", default=os.environ.get("HSM_CONTEXT"))
    parser.add_argument(
        "--output-dir",
        default=os.environ.get("LOADTEST_OUTPUT_DIR"),
        help="Directory for summary.json, samples.csv and charts",
    )
    parser.add_argument(
        "--failure-log",
        default=os.environ.get("LOADTEST_FAILURE_LOG"),
        help="File receiving diagnostics of failed requests instead of the console",
    )
    parser.add_argument(
        "--startup-timeout",
        type=float,
        default=os.environ.get("LOADTEST_STARTUP_TIMEOUT", "60"),
        help="Seconds to wait for /health before starting (0 disables)",
    )
    parser.add_argument("--tick", type=float, default=1.0, help="Scheduler tick in seconds")
    parser.add_argument("--no-charts", action="store_true", help="Skip chart rendering")
    parser.add_argument("--seed", type=int, default=None, help="Seed for payload and pacing draws")
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Only print the planned stages and thresholds without executing them",
    )
    parser.add_argument(
        "--log-level",
        default=os.environ.get("LOADTEST_LOG_LEVEL", "INFO"),
        help="Logging level",
    )
    return parser.parse_args(argv)


def setup_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )


def configure_failure_log(log_path: Path) -> logging.Logger:
    log_path.parent.mkdir(parents=True, exist_ok=True)
    logger = logging.getLogger(FAILURE_LOGGER_NAME)
    logger.setLevel(logging.INFO)
    logger.propagate = False

    handler = logging.FileHandler(log_path, mode="w", encoding="utf-8")
    formatter = logging.Formatter("%(asctime)s %(levelname)s %(threadName)s %(message)s")
    handler.setFormatter(formatter)

    logger.handlers.clear()
    logger.addHandler(handler)
    return logger


def build_config(args: argparse.Namespace) -> LoadTestConfig:
    config = default_profiles()[args.profile]
    if args.config:
        config = load_config(args.config, base=config)
    if args.context:
        config = dataclasses.replace(config, context=args.context)
    return config


def _require_file(option: str, value: str | None) -> None:
    if value and not Path(value).is_file():
        raise ConfigurationError(f"{option} {value} does not exist")


def transport_settings(args: argparse.Namespace, config: LoadTestConfig) -> TransportSettings:
    _require_file("--client-cert", args.client_cert)
    _require_file("--client-key", args.client_key)
    if args.insecure:
        verify: bool | str = False
    elif args.ca_bundle:
        _require_file("--ca-bundle", args.ca_bundle)
        verify = args.ca_bundle
    else:
        verify = True
    return TransportSettings(
        base_url=args.base_url,
        client_cert=args.client_cert or None,
        client_key=args.client_key or None,
        verify=verify,
        timeout_s=config.request_timeout_s,
    )


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    setup_logging(args.log_level)

    try:
        config = build_config(args)
    except ConfigurationError as exc:
        LOGGER.error("Invalid configuration: %s", exc)
        return EXIT_CONFIG_ERROR

    if args.dry_run:
        _print_plan(config)
        return EXIT_PASS

    if args.failure_log:
        configure_failure_log(Path(args.failure_log))

    try:
        settings = transport_settings(args, config)
        LOGGER.info("Target: %s (context %r)", settings.base_url, config.context)
        LOGGER.info(
            "Profile %s: %d stage(s), %s total",
            config.profile.name,
            len(config.profile.stages),
            format_duration(config.profile.total_duration),
        )
        runner = LoadTestRunner(
            config,
            client_factory_for(settings),
            tick_seconds=args.tick,
            seed=args.seed,
        )
        probe = EncryptionServiceClient(settings)
        try:
            wait_for_service(probe, args.startup_timeout)
        finally:
            probe.close()
    except (ConfigurationError, ServiceUnavailableError, ValueError) as exc:
        LOGGER.error("Cannot start load test: %s", exc)
        return EXIT_CONFIG_ERROR

    previous_handlers = _install_interrupt_handler(runner)
    try:
        result = runner.run()
    finally:
        for signum, handler in previous_handlers.items():
            signal.signal(signum, handler)

    print(format_summary(result))

    if args.output_dir:
        output_dir = Path(args.output_dir)
        write_summary_json(result, output_dir / "summary.json")
        write_samples_csv(result, output_dir / "samples.csv")
        if not args.no_charts:
            render_result_charts(result, output_dir)

    return EXIT_PASS if result.passed else EXIT_THRESHOLD_BREACH


def _install_interrupt_handler(runner: LoadTestRunner) -> dict:
    if threading.current_thread() is not threading.main_thread():
        return {}

    def handle(signum, frame) -> None:
        LOGGER.warning("Interrupted, draining virtual users")
        runner.stop()

    previous = {}
    for signum in (signal.SIGINT, signal.SIGTERM):
        previous[signum] = signal.signal(signum, handle)
    return previous


def _print_plan(config: LoadTestConfig) -> None:
    profile = config.profile
    print(f"Profile: {profile.name} ({format_duration(profile.total_duration)} total)")
    elapsed = 0.0
    for index, stage in enumerate(profile.stages, start=1):
        elapsed += stage.duration_seconds
        print(
            f"  - stage {index}: {format_duration(stage.duration_seconds)} -> "
            f"{stage.target} users (ends at {format_duration(elapsed)})"
        )
    print(
        f"Pacing: {config.sleep_min_s:g}-{config.sleep_max_s:g}s, "
        f"timeout={config.request_timeout_s:g}s, "
        f"health checks={config.health_check_probability:.0%}"
    )
    print("Thresholds:")
    for spec in config.thresholds:
        suffix = " (required)" if spec.required else ""
        print(f"  - {spec.metric}: {spec.expression}{suffix}")


if __name__ == "__main__":
    sys.exit(main())
