"""GenRelay: generation gateway that fans one request out to many providers."""

__version__ = "0.1.0"
