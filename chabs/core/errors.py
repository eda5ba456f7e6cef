"""
chabs/core/errors.py — Exception taxonomy for the storage core

Callers branch on these types, never on message text:

  ValidationError        bad draft / partial, surfaced, never retried
    DuplicateSkuError    product sku already taken
    DuplicateEmailError  user email already taken
  NotFoundError          no record with that id
  StorageError
    StorageWriteError        local medium refused the write (quota, disk)
    StorageUnavailableError  local medium unusable at startup
  RemoteUnavailableError recovered by the sync coordinator
  InvalidBackupError     restore/import rejected, nothing changed
  AccessDeniedError      session role may not open a page
"""


class ChabsError(Exception):
    """Base class for every error raised by the CHABS core."""
    code = "error"


class ValidationError(ChabsError):
    code = "validation_error"

    def __init__(self, errors, collection: str = ""):
        if isinstance(errors, str):
            errors = [errors]
        self.errors = list(errors)
        self.collection = collection
        prefix = f"{collection}: " if collection else ""
        super().__init__(prefix + "; ".join(self.errors))


class DuplicateSkuError(ValidationError):
    code = "duplicate_sku"

    def __init__(self, sku: str):
        self.sku = sku
        super().__init__([f"Product with SKU '{sku}' already exists"], "products")


class DuplicateEmailError(ValidationError):
    code = "duplicate_email"

    def __init__(self, email: str):
        self.email = email
        super().__init__([f"User with email '{email}' already exists"], "users")


class NotFoundError(ChabsError):
    code = "not_found"

    def __init__(self, collection: str, record_id: str):
        self.collection = collection
        self.record_id = record_id
        super().__init__(f"{collection}: no record with id '{record_id}'")


class StorageError(ChabsError):
    code = "storage_error"


class StorageWriteError(StorageError):
    code = "storage_write_error"


class StorageUnavailableError(StorageError):
    code = "storage_unavailable"


class RemoteUnavailableError(ChabsError):
    code = "remote_unavailable"


class InvalidBackupError(ChabsError):
    code = "invalid_backup"


class AccessDeniedError(ChabsError):
    code = "access_denied"
