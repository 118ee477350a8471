""" error types shared by the grid services """


class GridError(Exception):
    """Base class for errors raised by the grid core."""


class UploadRejected(GridError):
    """An upload refused before or at commit time.

    ``code`` is the stable machine-readable reason and ``status`` the HTTP
    status the server answers with.
    """
    code = "rejected"
    status = 400

    def __init__(self, message=None):
        super().__init__(message or self.code)
        self.message = message or self.code

    def to_dict(self):
        return {"error": self.message, "code": self.code}


class NoFile(UploadRejected):
    code = "no-file"
    status = 400


class WrongType(UploadRejected):
    code = "wrong-type"
    status = 400


class TooLarge(UploadRejected):
    code = "too-large"
    status = 413


class DimensionsExceeded(UploadRejected):
    code = "dimensions-exceeded"
    status = 400


class InvalidCoordinates(UploadRejected):
    code = "invalid-coordinates"
    status = 400


class CaptionTooLong(UploadRejected):
    code = "caption-too-long"
    status = 400


class SlotTaken(UploadRejected):
    code = "slot-taken"
    status = 409


class NoFreeSlot(UploadRejected):
    code = "no-free-slot"
    status = 503


class DailyCapExceeded(UploadRejected):
    code = "daily-cap-exceeded"
    status = 429


class StorageFailure(UploadRejected):
    """Asset write or occupancy commit failed; safe to retry from scratch."""
    code = "storage-failure"
    status = 500


class PlacementCommitError(GridError):
    """The occupancy row could not be written for a reason other than a
    taken cell."""


class AssetStoreError(GridError):
    """An asset could not be written to the blob store."""
