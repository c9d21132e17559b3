import logging
from contextlib import asynccontextmanager
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from stockroom.config import get_settings
from stockroom.db import create_db_and_tables
from stockroom.error import StockroomError
from stockroom.routers import activities, borrowings, categories, consumptions, materials, tools

settings = get_settings()

logging.basicConfig(
    level=settings.log_level,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    create_db_and_tables()  # ✅ 启动阶段
    yield
    logger.info("stockroom service stopped")


app = FastAPI(title="Stockroom - Tool & Material Ledger", lifespan=lifespan)

app.include_router(categories.router)
app.include_router(tools.router)
app.include_router(materials.router)
app.include_router(borrowings.router)
app.include_router(consumptions.router)
app.include_router(activities.router)


@app.get("/health")
def health():
    return {"ok": True}


@app.exception_handler(StockroomError)
async def stockroom_error_handler(request: Request, exc: StockroomError):
    logger.info("%s %s rejected: %s %s", request.method, request.url.path, exc.code, exc.message)
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.to_detail()})


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    return JSONResponse(
        status_code=422,
        content={"code": "VALIDATION_ERROR", "message": "Request validation failed", "errors": jsonable_errors(exc)},
    )


def jsonable_errors(exc: RequestValidationError) -> list:
    # model_validator 抛出的 ValueError 会原样放在 ctx 里，转成字符串才能序列化
    errors = []
    for err in exc.errors():
        err = dict(err)
        if "ctx" in err:
            err["ctx"] = {k: str(v) for k, v in err["ctx"].items()}
        errors.append(err)
    return errors
