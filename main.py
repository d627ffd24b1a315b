"""
Run the invitation media service with uvicorn.

HOST, PORT and RELOAD may be set in the environment.
"""

import os

import uvicorn

if __name__ == "__main__":
    uvicorn.run(
        "invite_media.app.api:app",
        host=os.getenv("HOST", "0.0.0.0"),
        port=int(os.getenv("PORT", "8000")),
        reload=os.getenv("RELOAD", "").lower() in ("1", "true", "yes"),
    )
