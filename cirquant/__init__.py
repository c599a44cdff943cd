"""CirQuant: apparent consumption and circularity indicators from PRODCOM and COMEXT."""

__version__ = "0.3.0"
