"""HTTP routers mounted by :func:`kbchat.main.create_app`."""
