"""
Imports every mapped class so ``Base.metadata`` is complete.

``create_tables`` / ``drop_tables`` in ``apparel_kernel.db.engine`` call
this through a deferred import; the kernel has no other dependency on
``apparel_modules``.
"""


def import_all_orm_models() -> None:
    # Production tables reference bills_of_materials, so the kernel goes first
    import apparel_kernel.models  # noqa: F401
    import apparel_modules.production.orm  # noqa: F401
