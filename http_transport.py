"""
Outbound HTTP policy for Bot API calls, built from config.api.
"""

from dataclasses import dataclass
from typing import Optional

from httpx import AsyncClient, Limits, Timeout

from config import config


@dataclass(frozen=True)
class TransportPolicy:
    trust_env: bool
    connect_timeout: float
    read_timeout: float
    write_timeout: float
    pool_timeout: float
    max_connections: int
    max_keepalive_connections: int

    @property
    def timeout(self) -> Timeout:
        return Timeout(
            connect=self.connect_timeout,
            read=self.read_timeout,
            write=self.write_timeout,
            pool=self.pool_timeout,
        )

    @property
    def limits(self) -> Limits:
        return Limits(
            max_connections=self.max_connections,
            max_keepalive_connections=self.max_keepalive_connections,
        )


def get_transport_policy() -> TransportPolicy:
    api = config.api
    return TransportPolicy(
        trust_env=api.trust_env,
        connect_timeout=api.connect_timeout,
        read_timeout=api.read_timeout,
        write_timeout=api.write_timeout,
        pool_timeout=api.pool_timeout,
        max_connections=api.max_connections,
        max_keepalive_connections=api.max_keepalive_connections,
    )


def create_async_client(policy: Optional[TransportPolicy] = None) -> AsyncClient:
    """Proxy variables are ignored unless the policy trusts the environment."""
    policy = policy or get_transport_policy()
    return AsyncClient(limits=policy.limits, timeout=policy.timeout, trust_env=policy.trust_env)
