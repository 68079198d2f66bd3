"""
FastAPI - Génération LLM streamée via RabbitMQ.

Endpoints:
- POST /generate                  -> Envoie la requête aux workers, stream le texte
- GET  /inference/{id}            -> Résultat persisté (réponse, usage, coût)
- GET  /inference/owner/{key}     -> Historique d'un propriétaire
- GET  /models                    -> Modèles disponibles
- GET  /health, /health/full

Lancer:
    uvicorn main:app --port 8007
    python -m streaming.llm_worker
"""
import asyncio
import logging
import uuid
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Optional

from fastapi import FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import StreamingResponse
from pydantic import BaseModel, Field

from config import LOG_FORMAT, LOG_LEVEL
from providers import load_registry
from store import get_store
from streaming import AsyncStreamSink, Gateway
from streaming.errors import BrokerError, UnknownModelError
from streaming.messages import InferenceRequestMessage, PromptMessage, PromptPart

logging.basicConfig(level=LOG_LEVEL, format=LOG_FORMAT)
logger = logging.getLogger("llm-mq")

SYSTEM_PROMPT = "You are a helpful assistant."


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Gestion du cycle de vie - gateway RabbitMQ partagée."""
    logger.info("Démarrage de l'application...")
    app.state.store = get_store()
    app.state.models = load_registry()
    app.state.gateway = Gateway(store=app.state.store)
    # La boucle de supervision retente la connexion si RabbitMQ est absent
    app.state.gateway.start()

    yield

    logger.info("Arrêt de l'application...")
    await asyncio.to_thread(app.state.gateway.stop)


app = FastAPI(
    title="LLM Streaming + RabbitMQ",
    lifespan=lifespan
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
    expose_headers=["X-Correlation-ID"],
)


class GenerateRequest(BaseModel):
    prompt: str = Field(min_length=1)
    model: Optional[str] = None
    image: Optional[str] = Field(default=None, description="Image en data URL (base64)")
    owner_key: Optional[str] = None


def build_prompt(request: GenerateRequest) -> list[PromptMessage]:
    content = [PromptPart(type="text", text=request.prompt)]
    if request.image:
        content.append(PromptPart(type="image_url", image_url={"url": request.image}))
    return [
        PromptMessage(role="assistant", content=SYSTEM_PROMPT),
        PromptMessage(role="user", content=content),
    ]


# ============================================================
# ENDPOINTS SANTÉ
# ============================================================

@app.get("/health")
async def health():
    """Health check basique."""
    return {"status": "ok"}


@app.get("/health/full")
async def health_full(request: Request):
    """Health check complet avec statut RabbitMQ."""
    gateway = request.app.state.gateway
    return {
        "status": "ok" if gateway.ready else "degraded",
        "rabbitmq": "connected" if gateway.ready else "disconnected",
        "pending_callers": len(gateway.registry),
        "in_flight": gateway.aggregator.in_flight(),
    }


@app.get("/models")
async def list_models(request: Request):
    models = request.app.state.models
    return {
        "default": models.default_model,
        "models": {
            model_id: {"name": m.name, "provider": m.provider, "multimodal": m.multimodal}
            for model_id, m in models.all().items()
        },
    }


# ============================================================
# GÉNÉRATION
# ============================================================

@app.post("/generate")
async def generate(body: GenerateRequest, request: Request):
    """
    Génération streamée.

    1. Crée l'enregistrement (status=pending)
    2. Publie la requête dans RabbitMQ, l'appelant reste attaché
    3. Stream le texte au fil des chunks relayés par l'agrégateur
    """
    gateway = request.app.state.gateway
    store = request.app.state.store

    try:
        model = request.app.state.models.resolve(body.model)
    except UnknownModelError as e:
        raise HTTPException(status_code=400, detail=str(e))

    correlation_id = str(uuid.uuid4())
    await asyncio.to_thread(store.create, {
        "_id": correlation_id,
        "owner_key": body.owner_key,
        "prompt": body.prompt,
        "model_name": model.id,
        "input_time": datetime.now(timezone.utc).isoformat(),
    })

    message = InferenceRequestMessage(
        correlation_id=correlation_id,
        model_name=model.id,
        prompt_messages=build_prompt(body),
    )
    sink = AsyncStreamSink()

    try:
        await asyncio.to_thread(gateway.dispatch, message, sink)
    except BrokerError as e:
        logger.error(f"Erreur queue: {e}")
        await asyncio.to_thread(store.update_by_id, correlation_id, {"status": "failed", "error": str(e)})
        raise HTTPException(
            status_code=503,
            detail=f"RabbitMQ indisponible: {e}"
        )

    return StreamingResponse(
        sink.text(),
        media_type="text/plain",
        headers={"X-Correlation-ID": correlation_id}
    )


@app.get("/inference/{correlation_id}")
async def get_inference(correlation_id: str, request: Request):
    item = await asyncio.to_thread(request.app.state.store.get_by_id, correlation_id)
    if item is None:
        raise HTTPException(status_code=404, detail="Inference introuvable")
    return item


@app.get("/inference/owner/{owner_key}")
async def get_inferences_by_owner(owner_key: str, request: Request):
    return await asyncio.to_thread(request.app.state.store.get_all_by_owner_key, owner_key)


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8007)
