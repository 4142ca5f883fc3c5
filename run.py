"""Development entry point.

Runs the messaging API under uvicorn with auto-reload. Production deployments
point their ASGI server at `app.main:app` directly.
"""

import uvicorn

if __name__ == "__main__":
    uvicorn.run("app.main:app", host="localhost", port=8000, reload=True)
