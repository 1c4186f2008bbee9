"""
Secret sync -- local file, vault and deployment providers.

The vault holds the truth per environment. Push is additive unless
told to prune; pull replaces the local file in one atomic step;
provider sync mirrors an environment into a platform like Vercel.
"""

from .engine import SyncEngine
from .models import SyncDirection, VaultRef
from .providers import create_provider, register_provider

__all__ = ["SyncDirection", "SyncEngine", "VaultRef", "create_provider", "register_provider"]
