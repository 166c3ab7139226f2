class StoreError(Exception):
    """Base for errors that map straight to a JSON error response."""

    status_code = 400

    def __init__(self, detail: str, **extra):
        super().__init__(detail)
        self.detail = detail
        self.extra = extra

    def to_dict(self) -> dict:
        return {"detail": self.detail, **self.extra}


class NotFoundError(StoreError):
    status_code = 404


class ForbiddenError(StoreError):
    status_code = 403
