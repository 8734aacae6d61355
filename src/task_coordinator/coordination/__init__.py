"""Task coordination: persistence, dependency resolution, atomic claims and workers."""
