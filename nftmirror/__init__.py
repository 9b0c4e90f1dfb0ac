"""NFT Mirror — marketplace order book, sales history and trait mirroring engine."""

__version__ = "0.1.0"
