"""
asgi.py -- Application assembly for ChatAuth.

This is the ONLY file that imports from both api/ and ws/. It joins the two
independent transports into a single ASGI app without coupling them to each
other. api/main.py knows nothing about ws/; ws/routes.py knows nothing about
api/. Both reach the gateway through app.state.

Run with:  uvicorn asgi:app --reload
"""

from api.main import app
from ws.routes import router as ws_router

# Mount the WebSocket router here, not in api/main.py.
app.include_router(ws_router, tags=["WebSocket"])
