"""Transport interfaces and concrete implementations.

Concrete transports are imported from their own modules so that the
protocols can be used without docker, git or an HTTP client installed.
"""

from rollwright.transports.base import (
    ClusterTransport,
    ImageBuilder,
    RegistryTransport,
    VcsTransport,
    bounded_call,
)

__all__ = [
    "ClusterTransport",
    "ImageBuilder",
    "RegistryTransport",
    "VcsTransport",
    "bounded_call",
]
