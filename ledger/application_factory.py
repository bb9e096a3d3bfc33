"""App factory and runtime wiring entrypoint."""


def create_app():
    """Return the Flask app instance used by WSGI entrypoints."""
    from ledger.main import build_app

    return build_app()
