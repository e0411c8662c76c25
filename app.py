import os
import asyncio
import re
import json
import time
import pathlib
import logging
from typing import List, Dict, Any, Optional

import tiktoken
from dotenv import load_dotenv
from fastapi import FastAPI, HTTPException, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from azure.identity import DefaultAzureCredential
from azure.storage.blob import BlobServiceClient

from openai import OpenAI

from context_store import (
    BlobStore,
    ConfigStore,
    ContextCache,
    ContextRepository,
    save_local_snapshot,
)
from webflow_fetcher import FetchResult, WebflowConfig, WebflowConfigError, WebflowError, WebflowFetcher

DOTENV_LOADED = load_dotenv()
logger = logging.getLogger("context_chat")


# -----------------------------
# Configuration (env vars)
# -----------------------------
# Webflow
WEBFLOW_API_TOKEN = os.getenv("WEBFLOW_API_TOKEN")
WEBFLOW_BASE_URL = os.getenv("WEBFLOW_BASE_URL", "https://api.webflow.com/v2")
WEBFLOW_SITE_ID = os.getenv("WEBFLOW_SITE_ID", "674045e3bdb2d16d7e73efd5")
WEBFLOW_PAGE_ID = os.getenv("WEBFLOW_PAGE_ID", "679528029097b958606ec2ed")
WEBFLOW_CASE_STUDIES_COLLECTION = os.getenv("WEBFLOW_CASE_STUDIES_COLLECTION", "67405a6bc01960d426e5da3f")
WEBFLOW_SYSTEM_PROMPT_COLLECTION = os.getenv("WEBFLOW_SYSTEM_PROMPT_COLLECTION", "67409359ef24c542fe79ed6c")
WEBFLOW_SYSTEM_PROMPT_ITEM = os.getenv("WEBFLOW_SYSTEM_PROMPT_ITEM", "674093e0ef24c542fe7a83b1")
WEBFLOW_TIMEOUT = float(os.getenv("WEBFLOW_TIMEOUT", "30"))

# OpenAI
OPENAI_API_KEY = os.getenv("OPENAI_API_KEY")
OPENAI_MODEL = os.getenv("OPENAI_MODEL", "gpt-4o-mini")
OPENAI_MAX_TOKENS = int(os.getenv("OPENAI_MAX_TOKENS", "1024"))

# Azure Storage (context blobs + latestContextUrl pointer)
AZURE_STORAGE_ACCOUNT = os.getenv("AZURE_STORAGE_ACCOUNT")
AZURE_STORAGE_CONTAINER = os.getenv("AZURE_STORAGE_CONTAINER")
AZURE_STORAGE_CONNECTION_STRING = os.getenv("AZURE_STORAGE_CONNECTION_STRING")
CONTEXT_BLOB_PREFIX = os.getenv("CONTEXT_BLOB_PREFIX", "")

# Context caching / prompt
CONTEXT_CACHE_TTL = float(os.getenv("CONTEXT_CACHE_TTL", "300"))
CONTEXT_STRING_LIMIT = int(os.getenv("CONTEXT_STRING_LIMIT", "1000"))
CONTEXT_LOCAL_PATH = pathlib.Path(os.getenv("CONTEXT_LOCAL_PATH", "./public/context.json"))

# Conversation window sent to the model (user + assistant pairs)
MAX_TURNS = int(os.getenv("CHAT_MAX_TURNS", "12"))

CORS_ALLOWED_ORIGINS = [
    o.strip()
    for o in os.getenv(
        "CORS_ALLOWED_ORIGINS",
        "https://selfhood.global,https://www.selfhood.global,"
        "https://selfhood-new.webflow.io,https://selfhoodglobal-new.webflow.io,"
        "http://localhost:3000",
    ).split(",")
    if o.strip()
]

RESPONSE_FORMAT_INSTRUCTIONS = """RESPONSE FORMAT:
You must respond with valid JSON in the following format:
{
  "answer": "Your direct answer (1-3 sentences, max 50 words)",
  "sources": [{
    "slug": "slug",
    "title": "title"
  }],
  "followUpQuestions": [
    "First follow-up question",
    "Second follow-up question",
    "Third follow-up question"
  ]
}
Include at most one source, using a slug and title taken from the context.
Follow-up questions are at most 10 words each and should not repeat the current answer or source."""


# -----------------------------
# Helpers
# -----------------------------
def _format_env_value(key: str, value: Any) -> str:
    if value is None:
        return "<unset>"
    if not isinstance(value, str):
        return str(value)
    if key in {"OPENAI_API_KEY", "WEBFLOW_API_TOKEN", "AZURE_STORAGE_CONNECTION_STRING"}:
        if value == "":
            return "<unset>"
        return f"****{value[-4:]}" if len(value) > 4 else "****"
    if value == "":
        return "<empty>"
    return value


def log_env_config() -> None:
    values = {
        "WEBFLOW_API_TOKEN": WEBFLOW_API_TOKEN,
        "WEBFLOW_BASE_URL": WEBFLOW_BASE_URL,
        "WEBFLOW_SITE_ID": WEBFLOW_SITE_ID,
        "WEBFLOW_PAGE_ID": WEBFLOW_PAGE_ID,
        "WEBFLOW_CASE_STUDIES_COLLECTION": WEBFLOW_CASE_STUDIES_COLLECTION,
        "WEBFLOW_SYSTEM_PROMPT_COLLECTION": WEBFLOW_SYSTEM_PROMPT_COLLECTION,
        "WEBFLOW_SYSTEM_PROMPT_ITEM": WEBFLOW_SYSTEM_PROMPT_ITEM,
        "WEBFLOW_TIMEOUT": WEBFLOW_TIMEOUT,
        "OPENAI_API_KEY": OPENAI_API_KEY,
        "OPENAI_MODEL": OPENAI_MODEL,
        "OPENAI_MAX_TOKENS": OPENAI_MAX_TOKENS,
        "AZURE_STORAGE_ACCOUNT": AZURE_STORAGE_ACCOUNT,
        "AZURE_STORAGE_CONTAINER": AZURE_STORAGE_CONTAINER,
        "AZURE_STORAGE_CONNECTION_STRING": AZURE_STORAGE_CONNECTION_STRING,
        "CONTEXT_BLOB_PREFIX": CONTEXT_BLOB_PREFIX,
        "CONTEXT_CACHE_TTL": CONTEXT_CACHE_TTL,
        "CONTEXT_STRING_LIMIT": CONTEXT_STRING_LIMIT,
        "CONTEXT_LOCAL_PATH": str(CONTEXT_LOCAL_PATH),
        "CHAT_MAX_TURNS": MAX_TURNS,
        "CORS_ALLOWED_ORIGINS": ",".join(CORS_ALLOWED_ORIGINS),
    }

    logger.info("dotenv loaded: %s", DOTENV_LOADED)
    logger.info("Environment configuration:")
    for key, value in values.items():
        logger.info("  %s=%s", key, _format_env_value(key, value))


def storage_configured() -> bool:
    return bool(AZURE_STORAGE_CONNECTION_STRING or (AZURE_STORAGE_ACCOUNT and AZURE_STORAGE_CONTAINER))


def get_tokenizer():
    # cl100k_base works well for modern OpenAI text models
    return tiktoken.get_encoding("cl100k_base")


def compute_context_stats(result: Optional[FetchResult]) -> Dict[str, Any]:
    if result is None:
        return {"pages": 0, "case_studies": 0, "tokens": 0, "total_chars": 0}

    text = result.to_json(indent=None)
    return {
        "pages": len(result.pages),
        "case_studies": len(result.case_studies),
        "tokens": len(get_tokenizer().encode(text)),
        "total_chars": len(text),
    }


def truncate_strings(value: Any, limit: int) -> Any:
    if isinstance(value, str):
        return value[:limit]
    if isinstance(value, dict):
        return {k: truncate_strings(v, limit) for k, v in value.items()}
    if isinstance(value, list):
        return [truncate_strings(v, limit) for v in value]
    return value


def build_system_prompt(context: FetchResult) -> str:
    parts = [RESPONSE_FORMAT_INSTRUCTIONS]
    settings = context.system_prompt
    if settings.style_guidelines.strip():
        parts.append(f"STYLE GUIDELINES:\n{settings.style_guidelines.strip()}")
    if settings.question_patterns.strip():
        parts.append(f"QUESTION PATTERNS:\n{settings.question_patterns.strip()}")

    data = truncate_strings(context.model_dump(by_alias=True), CONTEXT_STRING_LIMIT)
    parts.append(f"Context:\n{json.dumps(data, ensure_ascii=False)}")
    return "\n\n".join(parts)


def azure_blob_service_client() -> BlobServiceClient:
    if AZURE_STORAGE_CONNECTION_STRING:
        return BlobServiceClient.from_connection_string(AZURE_STORAGE_CONNECTION_STRING)

    if not AZURE_STORAGE_ACCOUNT:
        raise RuntimeError("Missing AZURE_STORAGE_ACCOUNT (or AZURE_STORAGE_CONNECTION_STRING).")

    account_url = f"https://{AZURE_STORAGE_ACCOUNT}.blob.core.windows.net"
    cred = DefaultAzureCredential(exclude_interactive_browser_credential=False)
    return BlobServiceClient(account_url=account_url, credential=cred)


def context_repository() -> ContextRepository:
    if not AZURE_STORAGE_CONTAINER:
        raise RuntimeError("Missing AZURE_STORAGE_CONTAINER")
    container = azure_blob_service_client().get_container_client(AZURE_STORAGE_CONTAINER)
    return ContextRepository(
        BlobStore(container, prefix=CONTEXT_BLOB_PREFIX),
        ConfigStore(container, prefix=f"{CONTEXT_BLOB_PREFIX}config/"),
    )


def webflow_fetcher() -> WebflowFetcher:
    return WebflowFetcher(
        WebflowConfig(
            api_token=WEBFLOW_API_TOKEN or "",
            base_url=WEBFLOW_BASE_URL,
            site_id=WEBFLOW_SITE_ID,
            page_id=WEBFLOW_PAGE_ID,
            case_studies_collection=WEBFLOW_CASE_STUDIES_COLLECTION,
            system_prompt_collection=WEBFLOW_SYSTEM_PROMPT_COLLECTION,
            system_prompt_item=WEBFLOW_SYSTEM_PROMPT_ITEM,
            timeout=WEBFLOW_TIMEOUT,
        )
    )


def openai_client() -> OpenAI:
    if not OPENAI_API_KEY:
        raise RuntimeError("Missing OPENAI_API_KEY")
    return OpenAI(api_key=OPENAI_API_KEY)


def extract_answer_text(response_obj: Any) -> str:
    try:
        return response_obj.choices[0].message.content or ""
    except (AttributeError, IndexError, TypeError):
        return ""


# -----------------------------
# FastAPI app
# -----------------------------
app = FastAPI(title="Webflow Context Chat (OpenAI + Azure Blob)")
app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ALLOWED_ORIGINS,
    allow_credentials=True,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["Content-Type"],
)

context_cache = ContextCache(ttl_seconds=CONTEXT_CACHE_TTL)
_context_load: Optional["asyncio.Future[FetchResult]"] = None


class ChatMessage(BaseModel):
    role: str = Field(pattern="^(user|assistant)$")
    content: str


class ChatRequest(BaseModel):
    messages: List[ChatMessage]


class AnswerSource(BaseModel):
    slug: str
    title: str


class ChatAnswer(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    answer: str
    sources: List[AnswerSource] = Field(default_factory=list, max_length=1)
    follow_up_questions: List[str] = Field(default_factory=list, alias="followUpQuestions")


class ChatResponse(BaseModel):
    role: str = "assistant"
    content: ChatAnswer


def parse_answer(text: str) -> ChatAnswer:
    s = text.strip()
    # Some models wrap JSON in a fenced code block even in JSON mode.
    fenced = re.match(r"^```(?:json)?\s*(.*?)\s*```$", s, re.S)
    if fenced:
        s = fenced.group(1)
    data = json.loads(s)
    if isinstance(data, dict) and isinstance(data.get("sources"), list):
        data["sources"] = data["sources"][:1]
    return ChatAnswer.model_validate(data)


def ask_model(context: FetchResult, messages: List[ChatMessage]) -> ChatAnswer:
    window = messages[-MAX_TURNS * 2 :]
    client = openai_client()
    resp = client.chat.completions.create(
        model=OPENAI_MODEL,
        max_tokens=OPENAI_MAX_TOKENS,
        response_format={"type": "json_object"},
        messages=[{"role": "system", "content": build_system_prompt(context)}]
        + [{"role": m.role, "content": m.content} for m in window],
    )
    return parse_answer(extract_answer_text(resp))


async def refresh_context() -> FetchResult:
    t0 = time.time()
    result = await webflow_fetcher().process_page()
    context_cache.set(result)
    logger.info("Context refreshed in %ss", round(time.time() - t0, 2))
    return result


async def get_context() -> FetchResult:
    global _context_load
    cached = context_cache.get()
    if cached is not None:
        return cached

    # Concurrent misses share one load so only one blob gets published.
    if _context_load is None or _context_load.done():
        _context_load = asyncio.ensure_future(load_context())
    load = _context_load
    try:
        return await asyncio.shield(load)
    finally:
        if load.done() and _context_load is load:
            _context_load = None


async def load_context() -> FetchResult:
    if storage_configured():
        repo = context_repository()
        stored = await run_in_threadpool(repo.load_latest)
        if stored is not None:
            context_cache.set(stored)
            return stored
        result = await refresh_context()
        await run_in_threadpool(repo.publish, result)
        return result

    logger.warning("Azure storage not configured; building context without persisting it")
    return await refresh_context()


def require_storage() -> None:
    if not storage_configured():
        raise HTTPException(
            status_code=400,
            detail="Missing Azure storage config. Set AZURE_STORAGE_CONNECTION_STRING OR (AZURE_STORAGE_ACCOUNT + AZURE_STORAGE_CONTAINER).",
        )


@app.exception_handler(WebflowError)
async def webflow_error_handler(request: Request, exc: WebflowError):
    logger.error("Webflow error on %s: %s", request.url.path, exc)
    return JSONResponse(
        status_code=500 if isinstance(exc, WebflowConfigError) else 502,
        content={"error": "Failed to fetch Webflow data", "message": str(exc), "type": exc.__class__.__name__},
    )


@app.on_event("startup")
def startup_event():
    log_env_config()


@app.post("/api/chat", response_model=ChatResponse)
async def chat(req: ChatRequest):
    if not req.messages or not req.messages[-1].content.strip():
        raise HTTPException(status_code=400, detail="messages must end with a non-empty message")

    context = await get_context()
    logger.debug("Chat request, last message: %s", req.messages[-1].content)

    try:
        answer = await run_in_threadpool(ask_model, context, req.messages)
    except (ValueError, ValidationError) as exc:
        logger.error("Model returned an unexpected answer shape: %s", exc)
        raise HTTPException(status_code=502, detail="Model returned an invalid answer")

    return ChatResponse(content=answer)


@app.get("/api/latest-context")
def latest_context():
    require_storage()
    return {"url": context_repository().latest_url()}


@app.post("/api/update-blob")
async def update_blob():
    require_storage()
    result = await refresh_context()
    url = await run_in_threadpool(context_repository().publish, result)
    local_path = None
    try:
        local_path = str(save_local_snapshot(result, CONTEXT_LOCAL_PATH))
    except OSError as exc:
        logger.warning("Failed to write local context snapshot %s: %s", CONTEXT_LOCAL_PATH, exc)
    return {
        "success": True,
        "blobUrl": url,
        "localPath": local_path,
        "stats": compute_context_stats(result),
    }


@app.post("/api/webflow-webhook", response_class=PlainTextResponse)
async def webflow_webhook():
    logger.info("Webhook triggered - fetching fresh data")
    require_storage()
    context_cache.invalidate()
    result = await refresh_context()
    await run_in_threadpool(context_repository().publish, result)
    return "OK"


@app.post("/api/webflow/refresh")
async def webflow_refresh():
    context_cache.invalidate()
    result = await refresh_context()
    return JSONResponse(result.model_dump(by_alias=True))


@app.get("/api/status")
def status():
    cached = context_cache.get()
    return {
        "ready": cached is not None,
        "cached_at": context_cache.cached_at,
        "latest_url": context_repository().latest_url() if storage_configured() else None,
        "model": OPENAI_MODEL,
        "page_id": WEBFLOW_PAGE_ID,
        **compute_context_stats(cached),
    }


# Entry point for: python app.py
if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="127.0.0.1", port=8000)
