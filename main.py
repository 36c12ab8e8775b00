import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from config import settings
from db import create_db_and_tables
from errors import LifecycleError
from routers import auth, listings, requests
from routers.auth import OptionalPrincipalDep

logging.basicConfig(
    level=settings.log_level.upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

app = FastAPI(title="FoodShare")


@app.on_event("startup")
def on_startup() -> None:
    create_db_and_tables()


@app.exception_handler(LifecycleError)
async def lifecycle_error_handler(request: Request, exc: LifecycleError):
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@app.get("/")
def read_root(current: OptionalPrincipalDep):
    return {
        "message": "FoodShare API",
        "current_user_id": current.id if current else None,
        "current_role": current.role if current else None,
    }


app.include_router(auth.router)
app.include_router(listings.router, prefix="/listings")
app.include_router(requests.router, prefix="/requests")
