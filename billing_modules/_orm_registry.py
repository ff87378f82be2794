"""
ORM model registry for billing modules.

Importing this module (or calling ``import_all_orm_models``) registers every
module ORM class with ``Base.metadata`` so that ``create_tables()`` creates
the full schema.
"""


def import_all_orm_models() -> None:
    """Import every module ORM so all tables are present in Base.metadata."""
    import billing_kernel.services.sequence_service  # noqa: F401  (sequence_counters)
    import billing_modules.invoicing.orm  # noqa: F401
    import billing_modules.projects.orm  # noqa: F401
    import billing_modules.reconciliation.orm  # noqa: F401
    import billing_modules.settings.orm  # noqa: F401
