"""Provider, model and system prompt endpoints.

Routes
------
GET    /settings/providers          List providers (built-in and stored)
POST   /settings/providers          Add or replace a stored provider
DELETE /settings/providers/{name}   Remove a stored provider
GET    /settings/models             Every ``"Provider: model"`` id
GET    /settings/prompts            List system prompts
POST   /settings/prompts            Create a system prompt
DELETE /settings/prompts/{id}       Delete a system prompt
"""

from __future__ import annotations

from typing import Any, Optional

from fastapi import APIRouter, HTTPException, Request
from fastapi.responses import Response
from pydantic import BaseModel

from branchchat.api.sessions import refresh_prompts
from branchchat.db import prompts as prompts_db
from branchchat.db import providers as providers_db
from branchchat.providers import ProviderConfig

router = APIRouter()


# ---------------------------------------------------------------------------
# Pydantic schemas
# ---------------------------------------------------------------------------

class ProviderRequest(BaseModel):
    name: str
    base_url: str
    api_key: Optional[str] = None
    available_models: list[str] = []


class PromptRequest(BaseModel):
    title: str
    content: str


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _provider_dict(provider: ProviderConfig) -> dict[str, Any]:
    # The API key is never echoed back.
    return {
        "name": provider.name,
        "base_url": provider.base_url,
        "has_api_key": bool(provider.api_key),
        "available_models": list(provider.available_models),
        "is_default": provider.is_default,
    }


def _reload_registry(request: Request) -> None:
    request.app.state.client.registry = providers_db.registry_from_db(request.app.state.db)


# ---------------------------------------------------------------------------
# Providers
# ---------------------------------------------------------------------------

@router.get("/providers", response_model=list[dict[str, Any]])
def list_providers_endpoint(request: Request) -> list[dict[str, Any]]:
    return [_provider_dict(p) for p in request.app.state.client.registry]


@router.post("/providers", status_code=201, response_model=dict[str, Any])
def save_provider_endpoint(body: ProviderRequest, request: Request) -> dict[str, Any]:
    """Store a provider and make it available for resolution immediately."""
    try:
        provider = providers_db.save_provider(
            request.app.state.db,
            ProviderConfig(
                name=body.name,
                base_url=body.base_url,
                api_key=body.api_key,
                available_models=body.available_models,
            ),
        )
    except ValueError as exc:
        raise HTTPException(status_code=422, detail=str(exc)) from exc
    _reload_registry(request)
    return _provider_dict(provider)


@router.delete("/providers/{name}", status_code=204, response_class=Response, response_model=None)
def delete_provider_endpoint(name: str, request: Request) -> Response:
    conn = request.app.state.db
    if providers_db.get_provider(conn, name) is None:
        raise HTTPException(status_code=404, detail=f"Provider '{name}' not found.")
    providers_db.delete_provider(conn, name)
    _reload_registry(request)
    return Response(status_code=204)


@router.get("/models", response_model=list[str])
def list_models_endpoint(request: Request) -> list[str]:
    return request.app.state.client.registry.all_available_models()


# ---------------------------------------------------------------------------
# System prompts
# ---------------------------------------------------------------------------

@router.get("/prompts", response_model=list[dict[str, Any]])
def list_prompts_endpoint(request: Request) -> list[dict[str, Any]]:
    return [vars(p) for p in prompts_db.list_prompts(request.app.state.db)]


@router.post("/prompts", status_code=201, response_model=dict[str, Any])
def create_prompt_endpoint(body: PromptRequest, request: Request) -> dict[str, Any]:
    try:
        prompt = prompts_db.create_prompt(request.app.state.db, body.title, body.content)
    except ValueError as exc:
        raise HTTPException(status_code=422, detail=str(exc)) from exc
    refresh_prompts(request)
    return vars(prompt)


@router.delete("/prompts/{prompt_id}", status_code=204, response_class=Response, response_model=None)
def delete_prompt_endpoint(prompt_id: str, request: Request) -> Response:
    conn = request.app.state.db
    if prompts_db.get_prompt(conn, prompt_id) is None:
        raise HTTPException(status_code=404, detail=f"System prompt '{prompt_id}' not found.")
    prompts_db.delete_prompt(conn, prompt_id)
    refresh_prompts(request)
    return Response(status_code=204)
