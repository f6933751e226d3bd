#!/usr/bin/env python3
"""gandi-dns - Protos DNS resource provider backed by Gandi LiveDNS

Keeps the DNS resources requested through Protos in sync with the records
published by Gandi LiveDNS for the Protos domain.

Every setting can be given on the command line, through an environment
variable or in a YAML config file (first match wins, in that order).

    Gandi:
        --apikey, -k           GANDI_API_KEY            LiveDNS API key (required)
                               GANDI_URL                API base URL
                                                        (default: https://api.gandi.net/v5/livedns)

    Protos:
                               PROTOS_URL               Internal API base URL
                                                        (default: http://protos:8080/api/v1/i)
                               APPID                    Application id assigned by Protos
                               REGISTER_DELAY_SECONDS   Wait before registering (default: 4)

    Runtime:
        --interval, -i         SYNC_INTERVAL_SECONDS    Full check interval (default: 300)
        --once                 SYNC_MODE                "once" or "watch" (default: watch)
        --log-level            LOG_LEVEL                DEBUG, INFO, WARNING, ERROR (default: INFO)
                               HTTP_TIMEOUT_SECONDS     Timeout for API calls (default: 10)
        --config, -c           GANDI_DNS_CONFIG         YAML config file

    Reconciliation:
                               DIFF_KEY_BY_TYPE         Key changes by name and type instead of
                                                        name only (default: false)
                               GANDI_DNS_EXCLUDE        Comma-separated record name patterns that
                                                        are never created, updated or deleted.
                                                        Exact name, wildcard ("*._domainkey*")
                                                        or regex prefixed with "~".

Example config file:

    apikey: "xxxxxxxx"
    interval: 600
    log_level: DEBUG
    exclude:
      - "*._domainkey*"
      - "~^_acme-challenge"
"""

from __future__ import annotations

import argparse
import logging
import os
import queue
import re
import signal
import sys
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence

import yaml

from gandi_dns.providers import (
    AlreadyRegisteredError,
    DNSProvider,
    GandiLiveDNSProvider,
    ProtosRegistry,
    ProviderError,
    RegistryError,
    ResourceRegistry,
)
from gandi_dns.sync import (
    PROVIDER_TYPE,
    Dispatcher,
    Event,
    PeriodicTick,
    ReconcileContext,
    Terminate,
    event_from_message,
)

logger = logging.getLogger(__name__)

DEFAULT_GANDI_URL = "https://api.gandi.net/v5/livedns"
DEFAULT_PROTOS_URL = "http://protos:8080/api/v1/i"

# =============================================================================
# Configuration
# =============================================================================


class ConfigError(Exception):
    pass


@dataclass
class Config:
    api_key: str
    interval: int = 300
    gandi_url: str = DEFAULT_GANDI_URL
    protos_url: str = DEFAULT_PROTOS_URL
    app_id: str = ""
    log_level: str = "INFO"
    sync_mode: str = "watch"
    register_delay: float = 4.0
    http_timeout: float = 10.0
    key_by_type: bool = False
    exclude_patterns: List[re.Pattern] = field(default_factory=list)


# setting name -> environment variable
ENV_VARS = {
    "apikey": "GANDI_API_KEY",
    "interval": "SYNC_INTERVAL_SECONDS",
    "gandi_url": "GANDI_URL",
    "protos_url": "PROTOS_URL",
    "app_id": "APPID",
    "log_level": "LOG_LEVEL",
    "sync_mode": "SYNC_MODE",
    "register_delay": "REGISTER_DELAY_SECONDS",
    "http_timeout": "HTTP_TIMEOUT_SECONDS",
    "key_by_type": "DIFF_KEY_BY_TYPE",
    "exclude": "GANDI_DNS_EXCLUDE",
}


def _parse_bool(value: Any, *, default: bool = False) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in {"1", "true", "yes", "y", "on"}


def _parse_exclude_patterns(value: Any) -> List[re.Pattern]:
    """Parse record name exclusion patterns.

    Accepts a comma-separated string or a list (from the YAML config file).
    """
    patterns: List[re.Pattern] = []
    if not value:
        return patterns

    items = value if isinstance(value, list) else str(value).split(",")
    for raw_item in items:
        item = str(raw_item).strip()
        if not item:
            continue

        try:
            if item.startswith("~"):
                # Explicit regex pattern
                patterns.append(re.compile(item[1:], re.IGNORECASE))
            elif "*" in item or "?" in item:
                # Wildcard pattern - convert fnmatch to regex
                regex_str = re.escape(item)
                regex_str = regex_str.replace(r"\*", ".*").replace(r"\?", ".")
                patterns.append(re.compile(f"^{regex_str}$", re.IGNORECASE))
            else:
                patterns.append(re.compile(f"^{re.escape(item)}$", re.IGNORECASE))
            logger.debug(f"Added exclusion pattern: {item}")
        except re.error as e:
            logger.warning(f"Invalid exclusion pattern '{item}': {e}")

    return patterns


def _load_config_file(path: str) -> Dict[str, Any]:
    try:
        with open(path, "r") as f:
            data = yaml.safe_load(f)
    except FileNotFoundError as e:
        raise ConfigError(f"Config file {path} not found") from e
    except yaml.YAMLError as e:
        raise ConfigError(f"Error parsing config file {path}: {e}") from e

    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigError(f"Config file {path} must contain a mapping")
    return data


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="gandi-dns",
        description="Gandi DNS is a Protos resource provider that uses the Gandi LiveDNS API.",
    )
    parser.add_argument("--apikey", "-k", help="Gandi LiveDNS API key")
    parser.add_argument(
        "--interval",
        "-i",
        type=int,
        help="Timer interval in seconds for checking all the resources (default: 300)",
    )
    parser.add_argument("--config", "-c", help="YAML config file")
    parser.add_argument("--log-level", dest="log_level", help="Log level (default: INFO)")
    parser.add_argument(
        "--once",
        action="store_const",
        const="once",
        dest="sync_mode",
        help="Run a single full sync and exit",
    )
    return parser


def load_config(
    argv: Optional[Sequence[str]] = None, environ: Optional[Mapping[str, str]] = None
) -> Config:
    """Build the configuration from flags, environment and config file."""
    environ = os.environ if environ is None else environ
    args = build_parser().parse_args(argv)

    config_path = args.config or environ.get("GANDI_DNS_CONFIG", "")
    file_values = _load_config_file(config_path) if config_path else {}

    def setting(name: str, default: Any = None) -> Any:
        value = getattr(args, name, None)
        if value is not None:
            return value
        env_value = environ.get(ENV_VARS[name], "").strip()
        if env_value:
            return env_value
        if file_values.get(name) is not None:
            return file_values[name]
        return default

    api_key = str(setting("apikey", "")).strip()
    if not api_key:
        raise ConfigError("A Gandi LiveDNS API key is required (--apikey or GANDI_API_KEY)")

    try:
        interval = int(setting("interval", 300))
        register_delay = float(setting("register_delay", 4.0))
        http_timeout = float(setting("http_timeout", 10.0))
    except (TypeError, ValueError) as e:
        raise ConfigError(f"Invalid numeric setting: {e}") from e
    if interval <= 0:
        raise ConfigError(f"Interval must be a positive number of seconds, got {interval}")

    sync_mode = str(setting("sync_mode", "watch")).lower().strip()
    if sync_mode not in ("once", "watch"):
        raise ConfigError(f"Invalid SYNC_MODE: {sync_mode}. Use 'once' or 'watch'")

    return Config(
        api_key=api_key,
        interval=interval,
        gandi_url=str(setting("gandi_url", DEFAULT_GANDI_URL)),
        protos_url=str(setting("protos_url", DEFAULT_PROTOS_URL)),
        app_id=str(setting("app_id", "")).strip(),
        log_level=str(setting("log_level", "INFO")).upper(),
        sync_mode=sync_mode,
        register_delay=max(0.0, register_delay),
        http_timeout=http_timeout,
        key_by_type=_parse_bool(setting("key_by_type"), default=False),
        exclude_patterns=_parse_exclude_patterns(setting("exclude", "")),
    )


# =============================================================================
# Logging Setup
# =============================================================================


def setup_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s [%(levelname)s] %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )


# =============================================================================
# Startup
# =============================================================================


class StartupError(Exception):
    pass


def register_as_provider(registry: ResourceRegistry) -> None:
    logger.info("Registering as DNS provider")
    try:
        registry.register_provider(PROVIDER_TYPE)
    except AlreadyRegisteredError as e:
        logger.warning(f"Failed to register as DNS provider: {e}")
    except RegistryError as e:
        raise StartupError(f"Failed to register as DNS provider: {e}") from e


def deregister(registry: ResourceRegistry) -> None:
    try:
        registry.deregister_provider(PROVIDER_TYPE)
    except RegistryError as e:
        logger.error(f"Failed to deregister as DNS provider: {e}")


def start(
    config: Config,
    provider: DNSProvider,
    registry: ResourceRegistry,
    sleep: Callable[[float], None] = time.sleep,
) -> Dispatcher:
    """Register with the registry, resolve the domain and build the dispatcher."""
    if not config.app_id:
        raise StartupError("No application id provided (APPID)")

    # Give the container runtime time to assign us an address
    if config.register_delay:
        sleep(config.register_delay)
    register_as_provider(registry)

    logger.debug("Getting domain from Protos")
    try:
        domain = registry.get_domain()
    except RegistryError as e:
        raise StartupError(f"Failed to retrieve domain from Protos: {e}") from e
    if not domain:
        raise StartupError("Failed to retrieve domain from Protos: empty domain")
    logger.info(f"Retrieved domain {domain} from Protos")

    try:
        provider.get_domain(domain)
    except ProviderError as e:
        raise StartupError(f"Failed to retrieve domain {domain} via the {provider.name} API: {e}") from e
    logger.info(f"Found domain {domain} via the {provider.name} API")

    context = ReconcileContext(
        domain=domain,
        provider=provider,
        registry=registry,
        key_by_type=config.key_by_type,
        exclude_patterns=config.exclude_patterns,
    )
    return Dispatcher(context)


# =============================================================================
# Event Loop
# =============================================================================


class EventLoop:
    """Delivers events to the dispatcher one at a time.

    Queued events are handled as they arrive and a PeriodicTick is dispatched
    every `interval` seconds, the first one immediately. A due tick is
    dispatched before any queued event.

    The loop itself only produces ticks. Resource change notifications come
    from an external producer (such as a Protos websocket listener), which
    is expected to hand raw messages to `submit_message` or ready events to
    `submit`.
    """

    POLL_SECONDS = 1.0

    def __init__(
        self,
        dispatcher: Dispatcher,
        interval: float,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.dispatcher = dispatcher
        self.interval = interval
        self._clock = clock
        self._queue: "queue.Queue[Event]" = queue.Queue()
        self._stopping = False

    def submit(self, event: Event) -> None:
        self._queue.put(event)

    def submit_message(self, message: Any) -> None:
        event = event_from_message(message)
        if event is not None:
            self.submit(event)

    def stop(self, *_: Any) -> None:
        """Request shutdown; safe to use as a signal handler."""
        self._stopping = True

    def _next_event(self, next_tick: float) -> Optional[Event]:
        timeout = min(self.POLL_SECONDS, max(0.0, next_tick - self._clock()))
        try:
            return self._queue.get(timeout=timeout) if timeout else self._queue.get_nowait()
        except queue.Empty:
            return None

    def run(self) -> None:
        next_tick = self._clock()
        try:
            while not self._stopping:
                # A due tick goes before queued events so a steady event
                # stream cannot postpone the full check.
                if self._clock() >= next_tick:
                    event: Optional[Event] = PeriodicTick()
                    next_tick = self._clock() + self.interval
                else:
                    event = self._next_event(next_tick)
                    if event is None:
                        continue
                if not self.dispatcher.dispatch(event):
                    return
        except KeyboardInterrupt:
            logger.info("Shutting down gracefully...")

        self.dispatcher.dispatch(Terminate())


# =============================================================================
# Main
# =============================================================================


def main(argv: Optional[Sequence[str]] = None) -> None:
    """Main entry point."""
    try:
        config = load_config(argv)
    except ConfigError as e:
        setup_logging("INFO")
        logger.error(f"Configuration validation failed: {e}")
        sys.exit(2)

    setup_logging(config.log_level)
    logger.info(f"gandi-dns: Protos ({config.protos_url}) -> Gandi LiveDNS ({config.gandi_url})")
    logger.info(f"Sync mode: {config.sync_mode}")
    if config.sync_mode == "watch":
        logger.info(f"Check interval: {config.interval}s")
    if config.exclude_patterns:
        logger.info(f"Record exclusions: {len(config.exclude_patterns)} pattern(s) configured")

    provider = GandiLiveDNSProvider(
        config.api_key, url=config.gandi_url, timeout_seconds=config.http_timeout
    )
    registry = ProtosRegistry(
        config.protos_url, app_id=config.app_id, timeout_seconds=config.http_timeout
    )

    try:
        dispatcher = start(config, provider, registry)
    except StartupError as e:
        logger.error(f"Failed to start gandi-dns provider: {e}")
        deregister(registry)
        sys.exit(1)

    if config.sync_mode == "once":
        dispatcher.dispatch(PeriodicTick())
        dispatcher.dispatch(Terminate())
        return

    loop = EventLoop(dispatcher, config.interval)
    signal.signal(signal.SIGTERM, loop.stop)
    logger.info("Waiting for events")
    try:
        loop.run()
    except Exception as e:
        logger.error(f"Fatal error: {e}", exc_info=True)
        deregister(registry)
        sys.exit(1)


if __name__ == "__main__":
    main()
