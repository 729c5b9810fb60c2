"""Fake cloud backend for engine tests.

Provides an in-memory backend and provider adapters that exercise the
engine end to end without any real API:

- In-memory resources keyed by provider id
- Call log for ordering, idempotency and parallelism assertions
- Failure injection: permanent, transient N times, crash after N mutations
- Out-of-band deletion and output changes for drift tests

Usage:
    from fake_cloud import FakeCloud, make_registry

    cloud = FakeCloud()
    registry = make_registry(cloud)
"""

from .adapters import (
    ADAPTER_TYPES,
    ClusterAdapter,
    FakeAdapter,
    IamRoleAdapter,
    InstanceAdapter,
    NetworkAdapter,
    NodeGroupAdapter,
    SecretAdapter,
    SecurityGroupAdapter,
    SubnetAdapter,
    make_registry,
)
from .backend import Call, FakeCloud, FakeResource, SimulatedCrash

__all__ = [
    "ADAPTER_TYPES",
    "Call",
    "ClusterAdapter",
    "FakeAdapter",
    "FakeCloud",
    "FakeResource",
    "IamRoleAdapter",
    "InstanceAdapter",
    "NetworkAdapter",
    "NodeGroupAdapter",
    "SecretAdapter",
    "SecurityGroupAdapter",
    "SimulatedCrash",
    "SubnetAdapter",
    "make_registry",
]
