"""HTTP routers mounted by :func:`branchchat.api.app.create_app`."""
