"""Client-side envelope encryption and upload pipeline for content-addressed storage."""

from .config import CipherVaultConfig  # noqa: F401
from .runtime import CipherVaultRuntime  # noqa: F401
