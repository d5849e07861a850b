import logging
from contextlib import asynccontextmanager
from typing import Dict, List, Optional, Union

from fastapi import APIRouter, Depends, FastAPI, Header, HTTPException, Query, Request
from fastapi.concurrency import run_in_threadpool
from jose import JWTError, jwt
from pydantic import BaseModel, Field, StrictFloat, StrictInt

from .config import Settings, configure_logging
from .errors import (
    BalanceError,
    ConcurrentUpdateConflict,
    CorruptBalanceData,
    InsufficientFunds,
    StorageUnavailable,
    UnknownUser,
    UserAlreadyExists,
)
from .events import BalanceEventPublisher
from .store import MAX_USER_ID, BalanceStore

logger = logging.getLogger(__name__)

ERROR_STATUS = {
    InsufficientFunds: 409,
    UserAlreadyExists: 409,
    ConcurrentUpdateConflict: 409,
    UnknownUser: 404,
    StorageUnavailable: 503,
    CorruptBalanceData: 500,
}

router = APIRouter()


class ChangeBalanceIn(BaseModel):
    user_id: int = Field(ge=0, le=MAX_USER_ID)
    currency: str = Field(min_length=1)
    amount: Union[StrictInt, StrictFloat]


class BalancesOut(BaseModel):
    user_id: int
    balances: Dict[str, Union[int, float]]


class SnapshotOut(BaseModel):
    id: int
    user_id: int
    balances: Dict[str, Union[int, float]]
    changed: int


def get_store(request: Request) -> BalanceStore:
    return request.app.state.store


def get_user(request: Request, auth: Optional[str] = Header(default=None, alias="Authorization")) -> str:
    if not auth or not auth.lower().startswith("bearer "):
        raise HTTPException(401, "Missing token")
    settings: Settings = request.app.state.settings
    token = auth.split(" ", 1)[1]
    try:
        return str(jwt.decode(token, settings.jwt_secret, algorithms=[settings.algorithm])["sub"])
    except (JWTError, KeyError):
        raise HTTPException(401, "Invalid token")


def require_internal(request: Request, internal: Optional[str] = Header(default=None, alias="X-Internal-Token")):
    if internal != request.app.state.settings.internal_token:
        raise HTTPException(401, "Unauthorized internal call")


def check_owner(user: str, user_id: int) -> None:
    if user != str(user_id):
        raise HTTPException(403, "Not your account")


async def call_store(fn, *args, **kwargs):
    try:
        return await run_in_threadpool(fn, *args, **kwargs)
    except BalanceError as e:
        status = ERROR_STATUS.get(type(e), 500)
        if status >= 500:
            logger.error("store failure: %s", e)
        raise HTTPException(status, str(e))
    except ValueError as e:
        raise HTTPException(400, str(e))


async def notify(request: Request, user_id: int, currency: str, balances: dict) -> None:
    publisher = request.app.state.publisher
    if publisher is None:
        return
    try:
        await publisher.publish("balance.changed", {"user_id": user_id, "currency": currency, "balances": balances})
    except Exception:
        # balance already committed; the event is best effort
        logger.exception("failed to publish balance change for user %s", user_id)


@router.put("/register", dependencies=[Depends(require_internal)])
async def register(user_id: int = Query(ge=0, le=MAX_USER_ID), store: BalanceStore = Depends(get_store)):
    await call_store(store.register_user, user_id)
    return {}


@router.get("/users", response_model=Dict[str, Union[int, float]])
async def get_balances(user_id: int = Query(ge=0, le=MAX_USER_ID), user=Depends(get_user),
                       store: BalanceStore = Depends(get_store)):
    check_owner(user, user_id)
    return await call_store(store.get_current_balance, user_id)


@router.get("/users/history", response_model=List[SnapshotOut])
async def get_history(user_id: int = Query(ge=0, le=MAX_USER_ID), since: Optional[int] = None,
                      until: Optional[int] = None, user=Depends(get_user),
                      store: BalanceStore = Depends(get_store)):
    check_owner(user, user_id)

    def collect():
        return [SnapshotOut(id=r.id, user_id=r.user_id, balances=r.balances, changed=r.changed)
                for r in store.get_history(user_id, since=since, until=until)]

    return await call_store(collect)


@router.post("/users/free/add", response_model=BalancesOut, dependencies=[Depends(require_internal)])
async def add_free_balance(body: ChangeBalanceIn, request: Request, store: BalanceStore = Depends(get_store)):
    balances = await call_store(store.adjust_balance, body.user_id, body.currency, body.amount)
    await notify(request, body.user_id, body.currency, balances)
    return BalancesOut(user_id=body.user_id, balances=balances)


@router.post("/users/set", response_model=BalancesOut, dependencies=[Depends(require_internal)])
async def set_balance(body: ChangeBalanceIn, request: Request, store: BalanceStore = Depends(get_store)):
    balances = await call_store(store.set_balance, body.user_id, body.currency, body.amount)
    await notify(request, body.user_id, body.currency, balances)
    return BalancesOut(user_id=body.user_id, balances=balances)


def create_app(settings: Optional[Settings] = None, store: Optional[BalanceStore] = None,
               publisher: Optional[BalanceEventPublisher] = None) -> FastAPI:
    settings = settings or Settings.from_env()
    configure_logging(settings.log_level)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if app.state.store is None:
            app.state.store = await run_in_threadpool(BalanceStore.from_settings, settings)
        if app.state.publisher is None and settings.rabbitmq_url:
            pub = BalanceEventPublisher(settings.rabbitmq_url)
            await pub.connect()
            app.state.publisher = pub
        yield
        if app.state.publisher is not None:
            await app.state.publisher.close()

    app = FastAPI(title="balance-service", lifespan=lifespan)
    app.state.settings = settings
    app.state.store = store
    app.state.publisher = publisher
    app.include_router(router)
    return app


app = create_app()
