"""caxa.

A build utility that packages an application directory, together with an
interpreter binary, into a single self-extracting executable.
"""

__all__: list[str] = ["__version__"]

__version__: str = "0.1.0"
