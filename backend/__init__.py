"""Credit core backend package.

Table models are registered on import of ``backend.src.billing.domain.tables``;
``load_all_models()`` is called by ``register_app()`` and the CLI before
``create_tables()`` so the metadata is complete.
"""

__version__ = '1.0.0'

_models_loaded = False


def load_all_models():
    """Import every table module so ``MappedBase.metadata`` knows about it.

    Idempotent; calling it more than once has no effect.
    """
    global _models_loaded
    if _models_loaded:
        return

    import backend.src.billing.domain.tables  # noqa: F401

    _models_loaded = True
