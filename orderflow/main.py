# orderflow/main.py
# FastAPI-приложение сервиса заказов: роуты, обработчики доменных ошибок, жизненный цикл.
# Схему в продакшене ведёт Alembic; в dev/test таблицы создаются при старте.

import logging
import time
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import ValidationError
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from orderflow.core.config import settings
from orderflow.core.errors import OrderflowError
from orderflow.db.base import Base
from orderflow.db.session import engine

# Таблицы должны быть зарегистрированы в Base.metadata до create_all
import orderflow.models.user
import orderflow.models.product
import orderflow.models.order

from orderflow.api import admin as admin_router
from orderflow.api import orders as orders_router
from orderflow.api import webhooks as webhooks_router

logging.basicConfig(level=settings.LOG_LEVEL)
logger = logging.getLogger(__name__)

VERSION = "1.0.0"


def ensure_schema(attempts: int = 5, delay: float = 2.0) -> bool:
    """
    create_all с повторами: при старте в docker-compose БД может подняться позже сервиса.

    Returns:
        False, если база так и не ответила
    """
    for attempt in range(1, attempts + 1):
        try:
            Base.metadata.create_all(bind=engine)
        except SQLAlchemyError as e:
            logger.warning(f"Schema setup attempt {attempt}/{attempts} failed: {e}")
            if attempt < attempts:
                time.sleep(delay * attempt)
            continue
        logger.info(f"Schema ready after {attempt} attempt(s)")
        return True
    logger.error(f"Database unreachable after {attempts} attempts, order endpoints will fail")
    return False


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info(f"Orderflow {VERSION} starting (environment={settings.ENVIRONMENT})")
    if settings.ENVIRONMENT not in ("production", "prod"):
        ensure_schema()
    yield
    engine.dispose()
    logger.info("Orderflow stopped, connection pool disposed")


app = FastAPI(
    title="Orderflow API",
    description="Жизненный цикл заказа: оплата, отгрузка, возвраты и возврат денег",
    version=VERSION,
    lifespan=lifespan,
)

# В dev открыт любой origin, иначе только витрина магазина
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"] if settings.ENVIRONMENT == "development" else [settings.STOREFRONT_URL],
    allow_credentials=True,
    allow_methods=["GET", "POST"],
    allow_headers=["*"],
)

app.include_router(orders_router.router, prefix="/api/orders", tags=["orders"])
app.include_router(admin_router.router, prefix="/api/admin", tags=["admin"])
app.include_router(webhooks_router.router, prefix="/api/webhooks", tags=["webhooks"])


@app.get("/", tags=["health"])
async def root():
    return {"service": "orderflow", "environment": settings.ENVIRONMENT}


@app.get("/health", tags=["health"])
def health():
    """Жив ли процесс и отвечает ли БД."""
    try:
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))
        database = "ok"
    except SQLAlchemyError as e:
        logger.error(f"Health check: database unavailable: {e}")
        database = "unavailable"
    return {"status": "healthy" if database == "ok" else "degraded", "database": database, "version": VERSION}


@app.exception_handler(OrderflowError)
async def orderflow_exception_handler(request: Request, exc: OrderflowError):
    """Доменные ошибки: стабильный code + понятное сообщение."""
    logger.info(f"{request.method} {request.url.path} -> {exc.code}: {exc.message}")
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@app.exception_handler(ValidationError)
async def command_validation_handler(request: Request, exc: ValidationError):
    """Недопустимые сочетания полей команды отсекаются на границе."""
    return JSONResponse(
        status_code=422,
        content={
            "success": False,
            "error": "validation_error",
            "message": "; ".join(err["msg"] for err in exc.errors()),
        },
    )


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception):
    logger.error(f"Unhandled exception on {request.method} {request.url.path}: {exc}", exc_info=True)
    return JSONResponse(
        status_code=500,
        content={
            "success": False,
            "error": "internal_error",
            "message": str(exc) if settings.ENVIRONMENT == "development" else "An error occurred",
        },
    )


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "orderflow.main:app",
        host="0.0.0.0",
        port=8000,
        reload=settings.ENVIRONMENT == "development",
        log_level=settings.LOG_LEVEL.lower(),
    )
