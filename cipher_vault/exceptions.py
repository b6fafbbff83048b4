"""Exception taxonomy for the CipherVault core."""


class CipherVaultError(Exception):
    """
    Base exception class for all CipherVault errors.
    """
    pass


class KeyDerivationFailed(CipherVaultError):
    """
    Raised when the key-encrypting key cannot be derived from an identity.
    """
    pass


class EncryptionFailed(CipherVaultError):
    """
    Raised when a payload or key cannot be encrypted.
    """
    pass


class DecryptionFailed(CipherVaultError):
    """
    Raised when content fails authentication: wrong key or corrupted ciphertext.
    """
    pass


class KeyUnwrapFailed(CipherVaultError):
    """
    Raised when a wrapped data key cannot be opened with the caller's KEK.
    """
    pass


class StorageUploadFailed(CipherVaultError):
    """
    Raised when the storage provider rejects or fails an upload.
    """
    pass


class StorageDownloadFailed(CipherVaultError):
    """
    Raised when ciphertext cannot be fetched for a content id.
    """
    pass


class RecordNotFound(CipherVaultError):
    """
    Raised when a record id does not exist in the local index.
    """
    pass


class CycleRejected(CipherVaultError):
    """
    Raised when a folder move would make a record its own ancestor.
    """
    pass


class InvalidRecordState(CipherVaultError):
    """
    Raised when an operation is not allowed in the record's lifecycle state.
    """
    pass


class InvalidSnapshot(CipherVaultError):
    """
    Raised when a backup snapshot is malformed.
    """
    pass


class SessionRequired(CipherVaultError):
    """
    Raised when an operation needs a connected identity and none is present.
    """
    pass


class TaskStateError(CipherVaultError):
    """
    Raised on an illegal upload task transition.
    """
    pass
