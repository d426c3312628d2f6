"""
livecast.main
~~~~~~~~~~~~~

FastAPI 应用入口 —— 注册路由、挂载中间件、定义生命周期。
"""
from __future__ import annotations

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded

from livecast.api import rooms, signaling_ws
from livecast.core.errors import LiveCastError
from livecast.core.logging import get_logger, setup_logging
from livecast.core.rate_limit import limiter
from livecast.core.settings import settings
from livecast.schemas.api_response import ApiResponse
from livecast.services.chat_relay import ChatRelay
from livecast.services.room_registry import RoomRegistry

# 初始化日志系统（必须在其他模块之前）
setup_logging()
logger = get_logger(__name__)


# ── 生命周期 ──────────────────────────────────────────────────────────

@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """应用生命周期钩子：创建进程内唯一的房间注册表与聊天中继。"""
    registry = RoomRegistry()
    app.state.room_registry = registry
    app.state.chat_relay = ChatRelay(registry)
    logger.info(
        "🚀 信令服务已启动 | env=%s | debug=%s | log_level=%s",
        settings.ENVIRONMENT,
        settings.debug,
        settings.effective_log_level,
    )
    yield
    logger.info("👋 信令服务已关闭 | 剩余房间: %d", len(registry.list_rooms()))


# ── 创建 FastAPI 实例 ─────────────────────────────────────────────────

app: FastAPI = FastAPI(
    title=settings.PROJECT_NAME,
    description="直播房间协调与 WebRTC 信令服务",
    version=settings.VERSION,
    debug=settings.debug,
    lifespan=lifespan,
)

app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)  # type: ignore[arg-type]

if settings.allow_cors_all_origins:
    # dev / test 环境：允许所有来源，方便本地调试
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
else:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=[],
        allow_methods=["GET"],
        allow_headers=["*"],
    )

# ── 路由挂载 ──────────────────────────────────────────────────────────
app.include_router(rooms.router, prefix="/api", tags=["Rooms"])
app.include_router(signaling_ws.router, tags=["Signaling"])


# ── 异常处理器 ────────────────────────────────────────────────────────

@app.exception_handler(LiveCastError)
async def livecast_error_handler(request: Request, exc: LiveCastError) -> JSONResponse:
    """业务错误：返回对应状态码与统一的 ApiResponse.fail() 格式。"""
    logger.info("业务错误: %s %s -> %s", request.method, request.url.path, exc.code)
    response = ApiResponse.fail(msg=exc.message, code=exc.status_code, data={"error": exc.code})
    return JSONResponse(status_code=exc.status_code, content=response.model_dump())


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """捕获所有未处理异常，返回统一的 ApiResponse.fail() 格式。"""
    logger.error("未捕获异常: %s %s -> %s", request.method, request.url, exc, exc_info=True)
    # 非 prod 环境返回详细错误信息，prod 环境隐藏内部细节
    detail = str(exc) if not settings.is_prod else "服务器内部错误"
    response = ApiResponse.fail(msg=detail, code=500, data=None)
    return JSONResponse(status_code=500, content=response.model_dump())


@app.get("/health", tags=["System"])
async def health_check(request: Request) -> JSONResponse:
    """验证服务是否正常运行。"""
    registry: RoomRegistry = request.app.state.room_registry
    return JSONResponse(
        content={
            "status": "ok",
            "environment": settings.ENVIRONMENT,
            "debug": settings.debug,
            "live_rooms": len(registry.list_rooms()),
            "online": registry.online_count,
        },
    )


def run() -> None:
    import uvicorn

    uvicorn.run(
        "livecast.main:app",
        host=settings.HOST,
        port=settings.PORT,
        reload=settings.reload,  # 仅 dev 环境开启热重载
        log_level=settings.effective_log_level.lower(),
    )


if __name__ == "__main__":
    run()
