# -*- coding: utf-8 -*-
"""
Error taxonomy for UnoCloud sync.

Every error raised by the sync core derives from UnoCloudError so callers can
catch the whole family at once. How each kind propagates:

- PathError: source directory missing or not a directory (fatal to a scan)
- NotFoundError: remote site, library or item absent
- AuthError: bearer token could not be acquired (fatal to a job)
- UploadError: content transfer failed (recorded per file, batch continues)
- StorageError: ledger I/O failed (propagates, never retried by the ledger)
- GraphAPIError: any other non-success Graph API response
"""


class UnoCloudError(Exception):
    """Base class for all sync errors"""


class PathError(UnoCloudError):
    """Raised when a mapping's source path is missing or is not a directory"""


class NotFoundError(UnoCloudError):
    """Raised when a SharePoint site, document library or item does not exist"""


class AuthError(UnoCloudError):
    """Raised when an access token cannot be acquired for a tenant"""


class UploadError(UnoCloudError):
    """Raised when transferring a file's content to SharePoint fails"""


class StorageError(UnoCloudError):
    """Raised when the sync ledger cannot be read or written"""


class GraphAPIError(UnoCloudError):
    """
    Raised for a Graph API response that is neither success nor one of the
    more specific cases above.

    Attributes:
        status_code (int): HTTP status code of the failed response
        response_text (str): First part of the response body, for diagnostics
    """

    def __init__(self, message, status_code=None, response_text=""):
        super().__init__(message)
        self.status_code = status_code
        self.response_text = response_text

    @property
    def is_conflict(self):
        """True for 409 responses (e.g. nameAlreadyExists)"""
        return self.status_code == 409
