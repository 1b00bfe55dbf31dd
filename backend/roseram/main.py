import os
import logging

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)s %(name)s - %(message)s",
    datefmt="%H:%M:%S",
)
# Quiet noisy HTTP logs unless debugging
logging.getLogger("httpx").setLevel(logging.WARNING)
logging.getLogger("httpcore").setLevel(logging.WARNING)

from dotenv import load_dotenv

load_dotenv()

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from roseram.errors import RoseramError, format_error_response
from roseram.routes.generate import router as generate_router
from roseram.routes.machine_setup import router as machine_setup_router
from roseram.routes.previews import router as previews_router
from roseram.routes.status import router as status_router

logger = logging.getLogger(__name__)

app = FastAPI(title="Roseram Builder API")

allowed_origins = os.getenv("CORS_ORIGINS", "http://localhost:3000,http://localhost:5050").split(",")

app.add_middleware(
    CORSMiddleware,
    allow_origins=allowed_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(RoseramError)
async def roseram_error_handler(request: Request, exc: RoseramError):
    level = logging.ERROR if exc.status_code >= 500 else logging.INFO
    logger.log(level, f"[api] {request.method} {request.url.path} failed: {exc.code} {exc.message}")
    return JSONResponse(status_code=exc.status_code, content=format_error_response(exc))


app.include_router(previews_router)
app.include_router(machine_setup_router)
app.include_router(status_router)
app.include_router(generate_router)


@app.get("/")
def root():
    return {"message": "Roseram Builder API is running"}


@app.get("/health")
def health():
    return {"status": "ok"}
