"""
Artifact collectors for offline registry hives.
Provides the hive accessor plus the ShimCache and AmCache decoders.
"""

from .hive_accessor import HiveKey, HiveValue, RegistryHive, ValueKind, load_hive
from .shimcache_claw import (
    ExecutableEntry,
    ProgramEntry,
    ShimCacheArtifact,
    ShimCacheEntry,
    ShimCacheParser,
    ShimCacheVersion,
    decode_shimcache,
    read_shimcache,
)
from .amcache_claw import (
    AmcacheArtifact,
    AmcacheFileArtifact,
    AmcacheParser,
    AmcacheProgramArtifact,
    ProgramArtifact,
    decode_amcache,
)

__all__ = [
    'HiveKey',
    'HiveValue',
    'RegistryHive',
    'ValueKind',
    'load_hive',
    'ExecutableEntry',
    'ProgramEntry',
    'ShimCacheArtifact',
    'ShimCacheEntry',
    'ShimCacheParser',
    'ShimCacheVersion',
    'decode_shimcache',
    'read_shimcache',
    'AmcacheArtifact',
    'AmcacheFileArtifact',
    'AmcacheParser',
    'AmcacheProgramArtifact',
    'ProgramArtifact',
    'decode_amcache',
]
