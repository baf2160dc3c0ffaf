"""
Error taxonomy for lookups and database refreshes
"""


class GeoLookupError(Exception):
    """Base class for every error raised by iplookup"""

    status_code = 500
    error = "Server error"

    def __init__(self, message: str = ""):
        super().__init__(message)
        self.message = message

    def to_dict(self) -> dict:
        return {"error": self.error, "message": self.message}


class ValidationError(GeoLookupError):
    """Malformed client input (not a strict IPv4 dotted quad)"""

    status_code = 400
    error = "Invalid IP address format"


class UnavailableError(GeoLookupError):
    """No database has been published yet"""

    status_code = 503
    error = "Service unavailable"


class InternalError(GeoLookupError):
    """Unexpected failure; the message is never shown to the caller"""

    def to_dict(self) -> dict:
        return {"error": self.error, "message": "Failed to perform IP lookup"}


# Refresh pipeline errors. These degrade one database type's freshness and
# never reach the lookup path.

class TransferError(GeoLookupError):
    """Remote archive could not be fetched"""


class ExtractionError(GeoLookupError):
    """Archive is corrupt or does not hold a usable payload"""


class PayloadNotFoundError(ExtractionError):
    """No payload file in the extracted archive"""


class AmbiguousPayloadError(ExtractionError):
    """More than one payload file in the extracted archive"""


class LoadError(GeoLookupError):
    """Payload present but the database reader failed to open it"""
