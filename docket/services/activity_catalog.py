import logging
import uuid

from sqlalchemy import select
from sqlalchemy.orm import Session

from docket.errors import InvalidArgumentError, NotFoundError
from docket.models.audit import (
    DocumentActivity,
    MatterActivity,
    RevisionActivity,
    SubjectType,
    TransferActivity,
)

logger = logging.getLogger(__name__)

# Namespace for catalog ids; migrations and runtime seeding derive the same
# ids from it, so a row's id never depends on which path created it.
ACTIVITY_NAMESPACE = uuid.UUID("6c0f4f7e-3d39-5b8e-9a57-1f0d2f7a9c41")

ACTIVITY_CATALOG: dict[SubjectType, tuple[str, ...]] = {
    SubjectType.matter: (
        "ARCHIVED",
        "CREATED",
        "DELETED",
        "RESTORED",
        "UNARCHIVED",
        "VIEWED",
    ),
    SubjectType.document: (
        "CHECKED_IN",
        "CHECKED_OUT",
        "CREATED",
        "DELETED",
        "RESTORED",
        "SAVED",
    ),
    SubjectType.revision: ("CREATED", "DELETED", "RESTORED", "SAVED"),
    SubjectType.transfer: ("COPIED", "MOVED"),
}

CATALOG_MODELS = {
    SubjectType.matter: MatterActivity,
    SubjectType.document: DocumentActivity,
    SubjectType.revision: RevisionActivity,
    SubjectType.transfer: TransferActivity,
}


def coerce_subject_type(value) -> SubjectType:
    if isinstance(value, SubjectType):
        return value
    try:
        return SubjectType(str(value).strip().lower())
    except ValueError:
        raise InvalidArgumentError(
            f"Invalid subject type. Allowed: {sorted(s.value for s in SubjectType)}"
        )


def normalize_activity_name(name: str) -> str:
    """'checked out', 'Checked-Out' and 'CHECKED_OUT' all name the same kind."""
    return "_".join(name.replace("-", " ").split()).upper()


def catalog_activity_id(subject_type: SubjectType, activity_name: str) -> uuid.UUID:
    return uuid.uuid5(
        ACTIVITY_NAMESPACE,
        f"{subject_type.value}:{normalize_activity_name(activity_name)}",
    )


class ActivityCatalog:
    @staticmethod
    def resolve_activity(db: Session, subject_type, activity_name: str) -> uuid.UUID:
        subject = coerce_subject_type(subject_type)
        if not activity_name or not activity_name.strip():
            raise InvalidArgumentError("Activity name is required")
        name = normalize_activity_name(activity_name)
        model = CATALOG_MODELS[subject]
        activity_id = db.scalar(select(model.id).where(model.activity == name))
        if activity_id is None:
            raise NotFoundError(
                f"Activity {name} is not defined for {subject.value}",
                {"subject_type": subject.value, "activity": name},
            )
        return activity_id

    @staticmethod
    def get_activity_name(db: Session, subject_type, activity_id) -> str:
        subject = coerce_subject_type(subject_type)
        activity = db.get(CATALOG_MODELS[subject], activity_id)
        if not activity:
            raise NotFoundError(f"Activity not found for {subject.value}")
        return activity.activity

    @staticmethod
    def list_activities(db: Session, subject_type) -> list[str]:
        model = CATALOG_MODELS[coerce_subject_type(subject_type)]
        return list(db.scalars(select(model.activity).order_by(model.activity)))

    @staticmethod
    def seed_activity_catalog(db: Session) -> int:
        """Insert any missing catalog rows. Safe to run repeatedly."""
        inserted = 0
        for subject, names in ACTIVITY_CATALOG.items():
            model = CATALOG_MODELS[subject]
            existing = set(db.scalars(select(model.activity)))
            for name in names:
                if name in existing:
                    continue
                db.add(model(id=catalog_activity_id(subject, name), activity=name))
                inserted += 1
        db.flush()
        if inserted:
            logger.info("Seeded %d activity catalog rows", inserted)
        return inserted


activity_catalog = ActivityCatalog()
