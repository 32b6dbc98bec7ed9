from sqlalchemy import MetaData, orm


class Base(orm.DeclarativeBase):
    """Base class for all database models"""

    pass


def get_base_metadata() -> MetaData:
    """Get the Base metadata for Alembic migrations"""

    # Import models to register them with Base.metadata

    from clubhub.audit.models import AuditLog  # noqa: F401
    from clubhub.exports.models import ExportJob  # noqa: F401
    from clubhub.media.models import Media  # noqa: F401
    from clubhub.notifications.models import Notification  # noqa: F401

    return Base.metadata
