"""Docker sandbox for agent execution.

- ``DockerCLI``: async wrapper over the docker CLI
- ``NetworkTopology``: internal (no egress) + external bridge networks
- ``ProxyGateway``: squid egress proxy with a domain allow-list
- ``CredentialBridge``: copies agent credentials into the container
- ``SandboxManager``: idempotent, self-healing stack startup
- ``PathTranslator``: bind-mount vs. local path roots
"""

from .config import SandboxConfig
from .credentials import CredentialBridge
from .docker import DockerCLI, DockerResult
from .manager import SandboxManager
from .network import NetworkTopology
from .paths import PathTranslator
from .proxy import ProxyGateway, generate_squid_conf

__all__ = [
    "CredentialBridge",
    "DockerCLI",
    "DockerResult",
    "NetworkTopology",
    "PathTranslator",
    "ProxyGateway",
    "SandboxConfig",
    "SandboxManager",
    "generate_squid_conf",
]
