import os
import logging
from typing import Any

from dotenv import load_dotenv
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
import httpx

# Early environment loading BEFORE importing livecode modules
here = os.path.dirname(os.path.abspath(__file__))
load_dotenv(os.path.join(here, ".env"), override=False)

from livecode.api.sessions import router as sessions_router
from livecode.config import ALLOWED_MODELS


app = FastAPI()

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(sessions_router)

# Basic logger for server diagnostics (inherits uvicorn handlers)
logger = logging.getLogger("livecode.server")
if not logger.handlers:
    logger.setLevel(logging.INFO)


@app.get("/api/models")
async def list_models() -> dict[str, Any]:
    """Return the models this server allows.

    If an AI Gateway key is configured, intersect ALLOWED_MODELS with the gateway's
    advertised models. Otherwise, return ALLOWED_MODELS as-is.
    """
    result = list(ALLOWED_MODELS)

    api_key = os.getenv("AI_GATEWAY_API_KEY") or os.getenv("VERCEL_OIDC_TOKEN")
    gateway_base = (
        os.getenv("AI_GATEWAY_BASE_URL")
        or os.getenv("OPENAI_BASE_URL")
        or "https://ai-gateway.vercel.sh/v1"
    )

    if not api_key:
        return {"models": result}

    url = f"{gateway_base.rstrip('/')}/models"
    headers = {"Authorization": f"Bearer {api_key}"}
    try:
        async with httpx.AsyncClient(timeout=15.0) as client:
            resp = await client.get(url, headers=headers)
            resp.raise_for_status()
            data = resp.json()
            available_ids = {str(m.get("id")) for m in (data.get("data") or []) if m.get("id")}
            intersected = [m for m in ALLOWED_MODELS if m in available_ids]
            return {"models": intersected or result}
    except httpx.HTTPError as e:
        logger.warning("model listing from gateway failed, using allowlist: %s", e)
        return {"models": result}


@app.get("/")
def read_root():
    return {"Hello": "livecode"}


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=8081)
