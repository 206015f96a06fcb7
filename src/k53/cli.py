#!/usr/bin/env python3
"""k53 - Kubernetes pods and services in a private Route 53 zone

Keeps one private hosted zone in sync with the live membership of a cluster:
every pod IP and every service cluster IP gets an A (or AAAA) record, and
records for pods and services that are gone are removed.

Record names:
    <pod-ip with dashes>.<namespace>.pod.<zone>     e.g. 10-0-0-1.default.pod.cluster.local.
    <service>.<namespace>.svc.<zone>                e.g. web.default.svc.cluster.local.

Environment variables:

    Zone:
        K53_ZONE_NAME                 Private hosted zone to manage (default: cluster.local.)
        K53_RECORD_TTL                TTL of every record, seconds (default: 60)
        K53_MAX_BATCH_SIZE            Maximum changes per Route 53 change batch (default: 1000)

    Network scope (the VPC the zone is bound to):
        K53_VPC_ID                    VPC id; if unset it is read from EC2 instance metadata
        AWS_REGION                    Region of the VPC; read from instance metadata if unset
        K53_IMDS_URL                  Instance metadata base URL
                                      (default: http://169.254.169.254/latest)

    Runtime:
        K53_SYNC_MODE                 "once" or "watch" (default: watch)
        K53_RESYNC_PERIOD_SECONDS     Time between successful cycles (default: 300)
        K53_RESYNC_JITTER_SECONDS     Random extra delay added to the period (default: 120)
        K53_RETRY_BASE_SECONDS        First retry delay after a failed cycle (default: 10)
        K53_RETRY_MAX_SECONDS         Ceiling of the exponential retry delay (default: 300)
        K53_CYCLE_TIMEOUT_SECONDS     Deadline for a single cycle (default: 120)
        K53_MIN_INTERVAL_SECONDS      Minimum time between two cycle starts (default: 5)
        K53_WATCH_EVENTS              Also reconcile on pod/service changes (default: true)
        K53_FAILURE_ALERT_THRESHOLD   Consecutive failures before errors are logged
                                      at ERROR level (default: 5)
        LOG_LEVEL                     DEBUG, INFO, WARNING, ERROR (default: INFO)

    Config file:
        K53_CONFIG_PATH               Optional YAML file (default: /config/k53.yaml).
                                      Keys are the variable names above in lower case
                                      without the K53_ prefix, e.g.:
                                        zone_name: cluster.local.
                                        record_ttl: 60
                                        vpc_id: vpc-0123456789abcdef0
                                      Environment variables override the file.
"""

from __future__ import annotations

import logging
import os
import signal
import sys
from dataclasses import dataclass, fields
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

import yaml

from .cluster import ClusterEventWatcher, ClusterObserver, KubernetesClusterObserver
from .desired import DEFAULT_TTL, DesiredStateBuilder
from .metadata import (
    InstanceMetadataScopeResolver,
    NetworkScopeResolver,
    StaticNetworkScopeResolver,
)
from .models import fqdn
from .providers import DNSAuthority, Route53Authority
from .reconciler import (
    ChangeApplier,
    ReconcileLoop,
    SchedulePolicy,
    ZoneBootstrapper,
    ZoneReconciler,
)

# =============================================================================
# Logging Setup
# =============================================================================

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

logging.basicConfig(
    level=getattr(logging, LOG_LEVEL.upper(), logging.INFO),
    format="%(asctime)s [%(levelname)s] %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger(__name__)

# =============================================================================
# Configuration
# =============================================================================

DEFAULT_CONFIG_PATH = "/config/k53.yaml"

# Settings field -> environment variable.
SETTINGS_ENV = {
    "zone_name": "K53_ZONE_NAME",
    "record_ttl": "K53_RECORD_TTL",
    "max_batch_size": "K53_MAX_BATCH_SIZE",
    "vpc_id": "K53_VPC_ID",
    "aws_region": "AWS_REGION",
    "imds_url": "K53_IMDS_URL",
    "sync_mode": "K53_SYNC_MODE",
    "resync_period_seconds": "K53_RESYNC_PERIOD_SECONDS",
    "resync_jitter_seconds": "K53_RESYNC_JITTER_SECONDS",
    "retry_base_seconds": "K53_RETRY_BASE_SECONDS",
    "retry_max_seconds": "K53_RETRY_MAX_SECONDS",
    "cycle_timeout_seconds": "K53_CYCLE_TIMEOUT_SECONDS",
    "min_interval_seconds": "K53_MIN_INTERVAL_SECONDS",
    "watch_events": "K53_WATCH_EVENTS",
    "failure_alert_threshold": "K53_FAILURE_ALERT_THRESHOLD",
}


@dataclass(frozen=True)
class Settings:
    zone_name: str = "cluster.local."
    record_ttl: int = DEFAULT_TTL
    max_batch_size: int = Route53Authority.MAX_CHANGES_PER_BATCH
    vpc_id: str = ""
    aws_region: str = ""
    imds_url: str = InstanceMetadataScopeResolver.BASE_URL
    sync_mode: str = "watch"
    resync_period_seconds: float = 300.0
    resync_jitter_seconds: float = 120.0
    retry_base_seconds: float = 10.0
    retry_max_seconds: float = 300.0
    cycle_timeout_seconds: float = 120.0
    min_interval_seconds: float = 5.0
    watch_events: bool = True
    failure_alert_threshold: int = 5

    @classmethod
    def load(
        cls, environ: Optional[Mapping[str, str]] = None, config_path: Optional[str] = None
    ) -> "Settings":
        """Build settings from defaults, the YAML config file, then the environment.

        Raises ValueError if a value cannot be converted to its field type.
        """
        environ = os.environ if environ is None else environ
        if config_path is None:
            config_path = environ.get("K53_CONFIG_PATH", DEFAULT_CONFIG_PATH)

        raw: Dict[str, Any] = {}
        raw.update(_load_config_file(config_path))
        for key, env_name in SETTINGS_ENV.items():
            value = environ.get(env_name, "").strip()
            if value:
                raw[key] = value

        values: Dict[str, Any] = {}
        for f in fields(cls):
            if f.name not in raw or raw[f.name] is None:
                continue
            values[f.name] = _convert(f.name, raw[f.name], getattr(cls, f.name))
        return cls(**values)

    def validate(self) -> List[str]:
        """Return a list of configuration errors (empty if valid)."""
        errors = []
        if not self.zone_name.strip(".").strip():
            errors.append("K53_ZONE_NAME must not be empty")
        if self.record_ttl <= 0:
            errors.append("K53_RECORD_TTL must be positive")
        if not 1 <= self.max_batch_size <= Route53Authority.MAX_CHANGES_PER_BATCH:
            errors.append(
                f"K53_MAX_BATCH_SIZE must be between 1 and {Route53Authority.MAX_CHANGES_PER_BATCH}"
            )
        if self.sync_mode not in ("once", "watch"):
            errors.append(f"Invalid K53_SYNC_MODE: {self.sync_mode}. Use 'once' or 'watch'")
        if self.resync_period_seconds <= 0:
            errors.append("K53_RESYNC_PERIOD_SECONDS must be positive")
        if self.resync_jitter_seconds < 0:
            errors.append("K53_RESYNC_JITTER_SECONDS must not be negative")
        if self.retry_base_seconds <= 0:
            errors.append("K53_RETRY_BASE_SECONDS must be positive")
        if self.retry_max_seconds < self.retry_base_seconds:
            errors.append("K53_RETRY_MAX_SECONDS must not be lower than K53_RETRY_BASE_SECONDS")
        if self.cycle_timeout_seconds < 0:
            errors.append("K53_CYCLE_TIMEOUT_SECONDS must not be negative")
        if self.vpc_id and not self.aws_region:
            logger.warning(
                f"K53_VPC_ID set without AWS_REGION; using {self.vpc_id} with the region "
                f"from instance metadata"
            )
        return errors

    @property
    def policy(self) -> SchedulePolicy:
        return SchedulePolicy(
            period=self.resync_period_seconds,
            jitter=self.resync_jitter_seconds,
            retry_base=self.retry_base_seconds,
            retry_max=self.retry_max_seconds,
        )


def _load_config_file(config_path: str) -> Dict[str, Any]:
    """Read the optional YAML config file; missing or broken files yield {}."""
    if not config_path:
        return {}
    path = Path(config_path)
    if not path.is_file():
        return {}
    try:
        with open(path, "r") as f:
            data = yaml.safe_load(f)
    except (OSError, yaml.YAMLError) as e:
        logger.error(f"Failed to load config from {config_path}: {e}")
        return {}
    if not data:
        return {}
    if not isinstance(data, dict):
        logger.warning(f"Config file {config_path} must contain a mapping, ignoring it")
        return {}

    known = set(SETTINGS_ENV)
    unknown = sorted(str(k) for k in data if str(k).lower() not in known)
    if unknown:
        logger.warning(f"Ignoring unknown keys in {config_path}: {', '.join(unknown)}")
    return {str(k).lower(): v for k, v in data.items() if str(k).lower() in known}


def _parse_bool(value: Any, *, default: bool = True) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in {"1", "true", "yes", "y", "on"}


def _convert(name: str, value: Any, default: Any) -> Any:
    try:
        if isinstance(default, bool):
            return _parse_bool(value, default=default)
        if isinstance(default, int):
            return int(str(value).strip())
        if isinstance(default, float):
            return float(str(value).strip())
        return str(value).strip()
    except ValueError:
        raise ValueError(f"Invalid value for {SETTINGS_ENV[name]}: {value!r}") from None


# =============================================================================
# Factories
# =============================================================================


def create_dns_authority(settings: Settings) -> DNSAuthority:
    return Route53Authority(max_batch_size=settings.max_batch_size)


def create_scope_resolver(settings: Settings) -> NetworkScopeResolver:
    if settings.vpc_id and settings.aws_region:
        return StaticNetworkScopeResolver(settings.vpc_id, settings.aws_region)
    return InstanceMetadataScopeResolver(
        base_url=settings.imds_url, region=settings.aws_region, vpc_id=settings.vpc_id
    )


def create_reconcile_loop(
    settings: Settings,
    *,
    authority: DNSAuthority,
    observer: ClusterObserver,
    scope_resolver: NetworkScopeResolver,
) -> ReconcileLoop:
    """Wire the engine for ``settings.zone_name`` onto the given adapters."""
    zone_name = fqdn(settings.zone_name)
    reconciler = ZoneReconciler(
        bootstrapper=ZoneBootstrapper(authority, scope_resolver, zone_name),
        builder=DesiredStateBuilder(observer, zone_name, ttl=settings.record_ttl),
        authority=authority,
        applier=ChangeApplier(authority),
        policy=settings.policy,
    )
    return ReconcileLoop(
        reconciler,
        cycle_timeout=settings.cycle_timeout_seconds or None,
        min_interval=settings.min_interval_seconds,
        failure_alert_threshold=settings.failure_alert_threshold,
    )


# =============================================================================
# Main
# =============================================================================


def main():
    """Main entry point."""
    try:
        settings = Settings.load()
    except ValueError as e:
        logger.error(str(e))
        logger.error("Configuration validation failed")
        sys.exit(1)

    errors = settings.validate()
    if errors:
        for error in errors:
            logger.error(error)
        logger.error("Configuration validation failed")
        sys.exit(1)

    zone_name = fqdn(settings.zone_name)
    logger.info(f"k53: Kubernetes -> Route 53 private zone {zone_name}")
    logger.info(f"Sync mode: {settings.sync_mode}")
    if settings.sync_mode == "watch":
        logger.info(
            f"Resync period: {settings.resync_period_seconds:.0f}s "
            f"(+ up to {settings.resync_jitter_seconds:.0f}s jitter), "
            f"cluster events: {'on' if settings.watch_events else 'off'}"
        )

    observer = KubernetesClusterObserver()
    loop = create_reconcile_loop(
        settings,
        authority=create_dns_authority(settings),
        observer=observer,
        scope_resolver=create_scope_resolver(settings),
    )

    def _handle_sigterm(signum, frame):
        logger.info("Received SIGTERM, stopping after the current step...")
        loop.stop()

    signal.signal(signal.SIGTERM, _handle_sigterm)

    try:
        if settings.sync_mode == "once":
            loop.run_once()
            if loop.reconciler.consecutive_failures:
                sys.exit(1)
            return

        if settings.watch_events:
            ClusterEventWatcher(observer, loop.trigger, loop.stop_event).start()
        loop.run_forever()

    except KeyboardInterrupt:
        logger.info("Shutting down gracefully...")
        loop.stop()
    except Exception as e:
        logger.error(f"Fatal error: {e}", exc_info=True)
        sys.exit(1)


if __name__ == "__main__":
    main()
