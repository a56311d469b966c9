"""
Health probing and aggregation.

A probe performs one bounded check against one component and never raises
for an expected failure. The aggregator fans probes out over a bounded
thread pool and offers the only long blocking call in the controller,
`wait_until_healthy`, which always honours its caller-supplied deadline.
"""
import socket
import time
from concurrent.futures import ThreadPoolExecutor, wait as wait_futures
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import List, Optional

import requests

from stackctl import settings
from stackctl.errors import ConfigError
from stackctl.utils import setup_logging, get_logger, now, to_iso_z

setup_logging()
logger = get_logger(__name__)

DEFAULT_POLL_INTERVAL = 2.0
# Smallest probe timeout handed out when a deadline is nearly spent
MIN_PROBE_TIMEOUT = 0.05
# Extra time granted to the pool beyond the probe timeout before a probe is abandoned
POOL_GRACE = 0.5


class HealthStatus(str, Enum):
    HEALTHY = 'healthy'
    UNHEALTHY = 'unhealthy'
    TIMEOUT = 'timeout'
    NOT_RUNNING = 'not-running'


@dataclass
class ComponentHealth:
    name: str
    status: HealthStatus
    detail: str = ''
    latency: float = 0.0
    optional: bool = False

    @property
    def healthy(self):
        return self.status == HealthStatus.HEALTHY

    def to_dict(self):
        return {
            'status': self.status.value,
            'detail': self.detail,
            'latency_ms': int(self.latency * 1000),
            'optional': self.optional,
        }


@dataclass
class HealthReport:
    components: List[ComponentHealth]
    timestamp: datetime = field(default_factory=now)
    attempts: int = 1

    @property
    def healthy(self):
        return all(c.healthy or c.optional for c in self.components)

    def get(self, name) -> Optional[ComponentHealth]:
        for c in self.components:
            if c.name == name:
                return c
        return None

    def failing(self) -> List[str]:
        return [c.name for c in self.components if not c.healthy and not c.optional]

    def not_running(self) -> List[str]:
        """Optional components that are down."""
        return [c.name for c in self.components if not c.healthy and c.optional]

    def counts(self):
        healthy = sum(1 for c in self.components if c.healthy)
        return {
            'healthy': healthy,
            'unhealthy': len(self.failing()),
            'not_running': len(self.not_running()),
        }

    def to_dict(self):
        return {
            'status': 'healthy' if self.healthy else 'degraded',
            'healthy': self.healthy,
            'timestamp': to_iso_z(self.timestamp),
            'attempts': self.attempts,
            'counts': self.counts(),
            'components': {c.name: c.to_dict() for c in self.components},
        }


class HealthProber:
    """Performs a single bounded health check for one component."""

    def __init__(self, session=None):
        self.session = session or requests.Session()

    def probe(self, component, timeout=None) -> ComponentHealth:
        check = component.health
        timeout = float(timeout if timeout is not None else check.timeout)
        started = time.monotonic()

        if check.kind == 'none':
            return ComponentHealth(component.name, HealthStatus.HEALTHY, 'no health check declared')
        if check.kind == 'http':
            if not check.url:
                raise ConfigError(f"Component '{component.name}' has an http health check without url")
            status, detail = self._probe_http(check, timeout)
        elif check.kind == 'tcp':
            if not check.host or not check.port:
                raise ConfigError(f"Component '{component.name}' has a tcp health check without host/port")
            status, detail = self._probe_tcp(check, timeout)
        else:
            raise ConfigError(f"Component '{component.name}' has unknown health kind '{check.kind}'")

        latency = time.monotonic() - started
        logger.debug("Probe %s -> %s (%s) in %.3fs", component.name, status.value, detail, latency)
        return ComponentHealth(component.name, status, detail, latency)

    def _probe_http(self, check, timeout):
        try:
            response = self.session.get(check.url, timeout=timeout, allow_redirects=False)
        except requests.exceptions.Timeout:
            return HealthStatus.TIMEOUT, f"no response within {timeout:.1f}s"
        except requests.exceptions.RequestException as e:
            return HealthStatus.UNHEALTHY, f"request failed: {e.__class__.__name__}"
        code = response.status_code
        response.close()
        if code in check.expected_status:
            return HealthStatus.HEALTHY, f"HTTP {code}"
        return HealthStatus.UNHEALTHY, f"HTTP {code}"

    def _probe_tcp(self, check, timeout):
        try:
            with socket.create_connection((check.host, check.port), timeout=timeout):
                return HealthStatus.HEALTHY, 'port open'
        except socket.timeout:
            return HealthStatus.TIMEOUT, f"no connection within {timeout:.1f}s"
        except OSError as e:
            return HealthStatus.UNHEALTHY, f"connect failed: {e.strerror or e}"


def _mark_optional(component, health):
    if not component.optional:
        return health
    status = health.status if health.healthy else HealthStatus.NOT_RUNNING
    return ComponentHealth(health.name, status, health.detail, health.latency, optional=True)


class HealthAggregator:
    """Runs probes across an inventory and aggregates them into a report."""

    def __init__(self, prober=None, max_workers=None, clock=time.monotonic, sleep=time.sleep):
        self.prober = prober or HealthProber()
        self.max_workers = max_workers
        self.clock = clock
        self.sleep = sleep

    def check(self, inventory, timeout_cap=None) -> HealthReport:
        """Probe every component concurrently, one probe each."""
        components = list(inventory.components)
        if not components:
            return HealthReport(components=[])

        limit = self.max_workers or settings.get_probe_workers()
        workers = max(1, min(len(components), limit))

        timeouts = {}
        for c in components:
            t = c.health.timeout
            if timeout_cap is not None:
                t = max(MIN_PROBE_TIMEOUT, min(t, timeout_cap))
            timeouts[c.name] = t

        pool = ThreadPoolExecutor(max_workers=workers, thread_name_prefix='probe')
        try:
            futures = {pool.submit(self.prober.probe, c, timeouts[c.name]): c for c in components}
            # Probes queue behind each other when the pool is smaller than the inventory
            rounds = -(-len(components) // workers)
            budget = max(timeouts.values()) * rounds + POOL_GRACE
            if timeout_cap is not None:
                budget = min(budget, timeout_cap + POOL_GRACE)
            done, _ = wait_futures(futures, timeout=budget)

            results = {}
            for fut, c in futures.items():
                if fut not in done:
                    fut.cancel()
                    results[c.name] = ComponentHealth(c.name, HealthStatus.TIMEOUT, 'probe did not finish in time')
                    continue
                exc = fut.exception()
                if isinstance(exc, ConfigError):
                    raise exc
                if exc is not None:
                    logger.warning("Health probe for %s raised %s: %s", c.name, exc.__class__.__name__, exc)
                    results[c.name] = ComponentHealth(c.name, HealthStatus.UNHEALTHY, f"probe error: {exc}")
                else:
                    results[c.name] = fut.result()
        finally:
            pool.shutdown(wait=False, cancel_futures=True)

        return HealthReport(components=[_mark_optional(c, results[c.name]) for c in components])

    def wait_until_healthy(self, inventory, deadline, interval=DEFAULT_POLL_INTERVAL) -> HealthReport:
        """Poll until every component is healthy or `deadline` seconds have passed.

        Returns the last report either way.
        """
        if deadline is None:
            raise ConfigError("wait_until_healthy requires a deadline")
        deadline = float(deadline)
        if deadline < 0:
            raise ConfigError("deadline must not be negative")
        interval = max(float(interval), MIN_PROBE_TIMEOUT)

        end = self.clock() + deadline
        attempts = 0
        while True:
            remaining = end - self.clock()
            report = self.check(inventory, timeout_cap=max(remaining, MIN_PROBE_TIMEOUT))
            attempts += 1
            report.attempts = attempts
            if report.healthy:
                logger.info("All %d component(s) healthy after %d check(s)", len(report.components), attempts)
                return report

            remaining = end - self.clock()
            if remaining <= 0:
                break
            logger.debug("Waiting for %s (%.1fs left)", ', '.join(report.failing()), remaining)
            self.sleep(min(interval, remaining))
            if end - self.clock() <= 0:
                break

        logger.warning("Deadline of %.1fs reached; not healthy: %s", deadline, ', '.join(report.failing()))
        return report
