"""
circles_node/app.py
-------------------
Thin entrypoint for running the app via:

    uvicorn circles_node.app:app

All route wiring lives in circles_node.api.main.
"""

from circles_node.api.main import create_app

app = create_app()
