"""Read IPSW firmware bundles and personalize IMG3 and IMG4 components."""

__version__ = "0.1.0"

__all__ = ["firmware", "img3", "img4", "ipsw"]