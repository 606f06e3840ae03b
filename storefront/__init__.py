import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from dotenv import load_dotenv

load_dotenv()

from storefront.core.config import Config
from storefront.db.database import init_db
from storefront.exceptions import (
    create_exception_handler,
    AccessTokenRequiredException,
    InvalidTokenException,
)
from storefront.middleware.auth_middleware import CustomAuthMiddleWare
from storefront.routers.cart import router as cart_router


logging.basicConfig(
    level=Config.LOG_LEVEL.upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)

api_version = "v1"
swagger_docs_url = f"/api/{api_version}/docs"
redoc_docs_url = f"/api/{api_version}/redoc"
openapi_url = f"/api/{api_version}/openapi.json"


@asynccontextmanager
async def lifespan(app: FastAPI):
    await init_db()
    yield


app = FastAPI(
    docs_url=swagger_docs_url,
    redoc_url=redoc_docs_url,
    openapi_url=openapi_url,
    title="Storefront Cart API",
    description="Shopping cart pricing and coupon service for the storefront.",
    version="1.0.0",
    lifespan=lifespan,
)

# Add CORS middleware first
app.add_middleware(
    CORSMiddleware,
    allow_origins=[
        'http://localhost',
        'http://localhost:3000',
    ],
    allow_credentials=True,
    allow_methods=['GET', 'POST', 'PUT', 'PATCH', 'DELETE'],
    allow_headers=["*"],
)

# Add custom auth middleware after CORS (order matters!)
app.add_middleware(CustomAuthMiddleWare)

# Register endpoints
app.include_router(cart_router, prefix=f'/api/{api_version}/cart', tags=["Cart"])

@app.get("/")
async def root():
    return {
        "message": "Storefront Cart API",
        "version": "1.0.0",
        "docs": swagger_docs_url,
        "status": "running"
    }

@app.get("/health")
async def health_check():
    return {"status": "healthy"}

# Auth-related exception handlers
app.add_exception_handler(AccessTokenRequiredException, create_exception_handler(401, "Authentication required!"))
app.add_exception_handler(InvalidTokenException, create_exception_handler(401, "Invalid or expired token provided!"))
