"""Central registry for the billing ORM models.

Importing this module loads every table onto ``Base.metadata`` so Alembic and
``create_all`` see the full schema regardless of which domain module was
imported first.
"""

from billing.domain.accounts import db_models as account_db_models  # noqa: F401
from billing.domain.ledger import db_models as ledger_db_models  # noqa: F401
from billing.domain.recurring import db_models as recurring_db_models  # noqa: F401
from billing.domain.webhooks import db_models as webhook_db_models  # noqa: F401
from billing.domain.ops import db_models as ops_db_models  # noqa: F401
