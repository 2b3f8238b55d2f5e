"""External collaborators.

Provides the generation provider client and the source readers it is fed
from.
"""

from testsmith.providers.generation import GenerationProviderClient
from testsmith.providers.source import LocalSourceProvider, MappingSourceProvider, SourceProvider

__all__ = [
    "GenerationProviderClient",
    "LocalSourceProvider",
    "MappingSourceProvider",
    "SourceProvider",
]
