from __future__ import annotations


class FileOpsError(Exception):
    """Base for every failure the file service reports to callers.

    Messages only ever mention paths relative to the storage root.
    """

    status_code = 500

    def __init__(self, message: str, path: str = ''):
        super().__init__(message)
        self.message = message
        self.path = path


class TraversalError(FileOpsError):
    status_code = 403


class NotFound(FileOpsError):
    status_code = 404


class NotADirectory(FileOpsError):
    status_code = 400


class NotAFile(FileOpsError):
    status_code = 400


class TargetNotDirectory(FileOpsError):
    status_code = 400


class InvalidName(FileOpsError):
    status_code = 400


class AlreadyExists(FileOpsError):
    status_code = 409


class Conflict(FileOpsError):
    status_code = 409


class CrossDeviceError(FileOpsError):
    status_code = 500


class PayloadTooLarge(FileOpsError):
    status_code = 413


class StorageIOError(FileOpsError):
    status_code = 500
