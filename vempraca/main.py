import logging
import math
import os
from typing import Optional

import psycopg2
from dotenv import load_dotenv
from fastapi import FastAPI, Header
from fastapi.middleware.cors import CORSMiddleware
from jose import JWTError, jwt
from pydantic import BaseModel

from . import app_context
from .app.billing import Unauthorized
from .app.routes.billing import router as billing_router


load_dotenv()

def _parse_connect_timeout(raw_value: str) -> int:
    try:
        timeout = float(raw_value)
    except ValueError as exc:
        raise ValueError("DB_CONNECT_TIMEOUT must be a number") from exc
    if timeout < 0:
        raise ValueError("DB_CONNECT_TIMEOUT must be non-negative")
    return int(math.ceil(timeout))

DB_STATEMENT_TIMEOUT_MS = int(os.getenv("DB_STATEMENT_TIMEOUT_MS", "5000"))

DB_CFG = dict(
    host=os.getenv("DB_HOST", "127.0.0.1"),
    port=int(os.getenv("DB_PORT", "5432")),
    dbname=os.getenv("DB_NAME", "postgres"),
    user=os.getenv("DB_USER", "postgres"),
    password=os.getenv("DB_PASSWORD", "postgres"),
    connect_timeout=_parse_connect_timeout(os.getenv("DB_CONNECT_TIMEOUT", "5")),
    options=f"-c statement_timeout={DB_STATEMENT_TIMEOUT_MS}",
)

# Supabase signs access tokens with the project's JWT secret.
AUTH_JWT_SECRET = os.getenv("AUTH_JWT_SECRET", "dev-secret-change-me")
AUTH_JWT_ALGORITHMS = [alg.strip() for alg in os.getenv("AUTH_JWT_ALGORITHMS", "HS256").split(",") if alg.strip()]
AUTH_JWT_AUDIENCE = os.getenv("AUTH_JWT_AUDIENCE", "authenticated")
CORS_ALLOW_ORIGINS = [
    origin.strip()
    for origin in os.getenv("CORS_ALLOW_ORIGINS", "http://localhost:3000").split(",")
    if origin.strip()
]

logger = logging.getLogger("vempraca")


class CurrentUser(BaseModel):
    id: str
    email: Optional[str] = None
    role: Optional[str] = None


def get_conn():
    return psycopg2.connect(**DB_CFG)


def resolve_user_from_bearer_token(token: str) -> Optional[CurrentUser]:
    options = {"verify_aud": bool(AUTH_JWT_AUDIENCE)}
    try:
        payload = jwt.decode(
            token,
            AUTH_JWT_SECRET,
            algorithms=AUTH_JWT_ALGORITHMS,
            audience=AUTH_JWT_AUDIENCE or None,
            options=options,
        )
    except JWTError as exc:
        logger.debug("Rejected bearer token: %s", exc)
        return None

    subject = payload.get("sub")
    if not subject:
        return None
    return CurrentUser(id=str(subject), email=payload.get("email"), role=payload.get("role"))


def get_current_user(authorization: Optional[str] = Header(None)) -> CurrentUser:
    if not authorization or not authorization.lower().startswith("bearer "):
        raise Unauthorized().to_http_exception()

    token = authorization.split(" ", 1)[1].strip()
    user = resolve_user_from_bearer_token(token)
    if user is None:
        raise Unauthorized(message="Invalid session").to_http_exception()
    return user


app_context.configure(get_conn=get_conn, get_current_user=get_current_user)

app = FastAPI(title="VemPraCá Billing API")

app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ALLOW_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(billing_router)


@app.get("/api/health")
def health() -> dict:
    return {"status": "ok"}


# run: uvicorn vempraca.main:app --host 127.0.0.1 --port 8000 --reload
