from novelctx.models.content import (
    CONTENT_UNIT_KINDS,
    ConsistencyCheckRecord,
    ContentUnit,
    ProjectChapter,
)

__all__ = [
    "CONTENT_UNIT_KINDS",
    "ContentUnit",
    "ProjectChapter",
    "ConsistencyCheckRecord",
]
