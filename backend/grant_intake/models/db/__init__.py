"""SQLAlchemy 2.0 ORM models for the grant intake service.

Every model must be imported at module level to register with the
``DeclarativeBase`` metadata used by :func:`grant_intake.database.init_db`.
"""

from grant_intake.models.db.base import Base  # noqa: F401
from grant_intake.models.db.submission import (  # noqa: F401
    GrantSubmission,
    ReviewShareGrant,
)
