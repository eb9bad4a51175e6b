import importlib
import logging
import os
import pkgutil
from logging.config import fileConfig
from pathlib import Path

from alembic import context
from flask import current_app

config = context.config

if config.config_file_name and Path(config.config_file_name).exists():
    fileConfig(config.config_file_name)
else:
    logging.basicConfig(level=logging.INFO)
logger = logging.getLogger("alembic.env")

migrate_ext = current_app.extensions["migrate"]
config.set_main_option(
    "sqlalchemy.url",
    migrate_ext.db.engine.url.render_as_string(hide_password=False).replace("%", "%%"),
)

# Reflected indexes missing from the models are kept unless named here (comma separated)
DROPPABLE_INDEXES = {
    name.strip() for name in os.getenv("ALEMBIC_DROP_INDEX_ALLOWLIST", "").split(",") if name.strip()
}


def _load_billing_models():
    """Import every model module so autogenerate sees the partial active-assignment index."""
    import tuition_billing.models as models_pkg
    for mod in pkgutil.iter_modules(models_pkg.__path__):
        importlib.import_module(f"{models_pkg.__name__}.{mod.name}")


def _include_object(obj, name, type_, reflected, compare_to):
    if type_ == "index" and reflected and compare_to is None:
        return name in DROPPABLE_INDEXES
    return True


def _skip_empty_autogenerate(context_, revision, directives):
    if getattr(config.cmd_opts, "autogenerate", False) and directives[0].upgrade_ops.is_empty():
        directives[:] = []
        logger.info("No billing schema changes detected.")


def _configure_kwargs():
    _load_billing_models()
    return {
        "target_metadata": migrate_ext.db.metadata,
        "compare_type": True,
        "include_object": _include_object,
        "render_as_batch": True,
    }


def run_migrations_offline():
    context.configure(url=config.get_main_option("sqlalchemy.url"), literal_binds=True, **_configure_kwargs())
    with context.begin_transaction():
        context.run_migrations()


def run_migrations_online():
    kwargs = {**migrate_ext.configure_args, **_configure_kwargs()}
    kwargs.setdefault("process_revision_directives", _skip_empty_autogenerate)
    with migrate_ext.db.engine.connect() as connection:
        context.configure(connection=connection, **kwargs)
        with context.begin_transaction():
            context.run_migrations()


if context.is_offline_mode():
    run_migrations_offline()
else:
    run_migrations_online()
