"""Envelope encryption primitives: KEK derivation, DEK generation, AEAD wrap/unwrap."""

from .encoding import b64decode, b64encode  # noqa: F401
from .envelope import EnvelopeCipher  # noqa: F401
from .key_derivation import KeyDerivation  # noqa: F401
