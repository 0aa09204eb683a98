"""
Exceptions for sealedstore
Everything raised by this package derives from SealedStoreError so callers
have one general error catcher. Errors coming back from the storage
collaborator are not wrapped.
"""


class SealedStoreError(Exception):
    # general container for errors
    pass


class InvalidKeyMaterialError(SealedStoreError):
    # raised when a master key has the wrong shape (bad AES length,
    # missing private half for a decrypt) before any I/O happens
    pass


class KeyMismatchError(SealedStoreError):
    # raised when the master key cannot unwrap the stored data key
    pass


class MaterialsNotFoundError(SealedStoreError):
    # raised when key/IV are absent (or unreadable) at the configured location
    pass


class InvalidMaterialsLocationError(SealedStoreError, ValueError):
    # raised on an unrecognized materials location tag
    pass


class MissingSizeHintError(SealedStoreError, ValueError):
    # raised when no content length or estimate is available for a
    # single-vs-multipart decision
    pass


class RangeNotSupportedError(SealedStoreError, ValueError):
    # raised when a byte range is combined with client-side decryption
    pass


class MultipartStateError(SealedStoreError):
    # raised when a multipart upload is used after completion or abort
    pass


class MissingCredentialsError(SealedStoreError):
    # raised when a presigned URL is requested without access keys configured
    pass


class StorageError(SealedStoreError):
    # raised by storage clients when an object store operation fails
    pass


class ObjectNotFoundError(StorageError):
    # raised if a key does not exist in a bucket
    pass


class NoSuchUploadError(StorageError):
    # raised if a multipart upload id is unknown (or already finished)
    pass
