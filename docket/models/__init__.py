from docket.models.audit import (  # noqa: F401
    DocumentActivity,
    DocumentActivityUser,
    MatterActivity,
    MatterActivityUser,
    MatterDocumentActivityUserFrom,
    MatterDocumentActivityUserTo,
    RevisionActivity,
    RevisionActivityUser,
    SubjectType,
    TransferActivity,
    TransferDirection,
)
from docket.models.matter import (  # noqa: F401
    Document,
    DocumentState,
    Matter,
    MatterStatus,
    Revision,
)
from docket.models.user import User  # noqa: F401
