"""pluginfed: verified mirroring of plugins from federated sources."""

from pluginfed.__version__ import __version__

__all__ = ["__version__"]
