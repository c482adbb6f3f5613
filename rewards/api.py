from contextlib import asynccontextmanager
from functools import lru_cache
from typing import Optional

from fastapi import BackgroundTasks, Depends, FastAPI, Header, HTTPException, Query, status
from fastapi.middleware.cors import CORSMiddleware

from .config import get_settings
from .errors import GroupNotEnrolledError, NotAuthorizedError, RewardServiceError
from .logging_config import setup_logging
from .models import (
    AddVouchersRequest,
    AddVouchersResult,
    InviteHistoryResponse,
    JoinEvent,
    JoinOutcome,
    Voucher,
    VoucherPage,
    VoucherState,
)
from .notifications import LoggingNotifier, NotificationDispatcher, WebhookNotifier
from .service import RewardService
from .sql_store import SqlVoucherStore
from .store import InMemoryVoucherStore, StoreUnavailableError


@lru_cache
def get_reward_service() -> RewardService:
    settings = get_settings()
    if settings.database_url:
        store = SqlVoucherStore(settings.database_url)
    else:
        store = InMemoryVoucherStore()
    if settings.notification_webhook_url:
        notifier = WebhookNotifier(settings.notification_webhook_url, settings.notification_timeout_seconds)
    else:
        notifier = LoggingNotifier()
    return RewardService(
        store=store,
        settings=settings,
        dispatcher=NotificationDispatcher(notifier, settings.admin_ids),
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    setup_logging()
    service = get_reward_service()
    if isinstance(service.store, SqlVoucherStore):
        await service.store.create_tables()
    yield
    await service.store.close()


app = FastAPI(
    title="Referral Voucher Rewards API",
    description="Grants vouchers from a shared inventory to referrers and the members they invite",
    version="1.0.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.get("/health", tags=["System"])
def health_check():
    return {"status": "healthy", "service": "referral-voucher-rewards"}


@app.post("/events/member-joined", response_model=JoinOutcome, tags=["Events"])
async def member_joined(
    event: JoinEvent,
    background_tasks: BackgroundTasks,
    service: RewardService = Depends(get_reward_service),
) -> JoinOutcome:
    outcome = await service.process_join(event)
    background_tasks.add_task(service.notify, outcome)
    return outcome


@app.post("/vouchers", response_model=AddVouchersResult, status_code=status.HTTP_201_CREATED, tags=["Vouchers"])
async def add_vouchers(
    request: AddVouchersRequest,
    x_user_id: Optional[str] = Header(default=None),
    service: RewardService = Depends(get_reward_service),
) -> AddVouchersResult:
    try:
        return await service.add_vouchers(x_user_id, request)
    except NotAuthorizedError as e:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(e))
    except RewardServiceError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))


@app.get("/vouchers", response_model=VoucherPage, tags=["Vouchers"])
async def list_vouchers(
    state: VoucherState = VoucherState.ALL,
    limit: Optional[int] = Query(default=None, gt=0),
    offset: int = Query(default=0, ge=0),
    x_user_id: Optional[str] = Header(default=None),
    service: RewardService = Depends(get_reward_service),
) -> VoucherPage:
    try:
        return await service.list_vouchers(x_user_id, state, limit, offset)
    except NotAuthorizedError as e:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(e))
    except RewardServiceError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    except StoreUnavailableError as e:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(e))


@app.get("/users/{user_id}/vouchers", response_model=list[Voucher], tags=["Users"])
async def get_user_vouchers(
    user_id: str,
    x_user_id: Optional[str] = Header(default=None),
    service: RewardService = Depends(get_reward_service),
) -> list[Voucher]:
    if x_user_id != user_id:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Vouchers can only be listed by their owner")
    try:
        return await service.vouchers_for_user(user_id)
    except StoreUnavailableError as e:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(e))


@app.get(
    "/groups/{group_id}/referrers/{user_id}/invites",
    response_model=InviteHistoryResponse,
    tags=["Users"],
)
async def get_invite_history(
    group_id: str,
    user_id: str,
    service: RewardService = Depends(get_reward_service),
) -> InviteHistoryResponse:
    try:
        return await service.invite_history(user_id, group_id)
    except GroupNotEnrolledError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    except StoreUnavailableError as e:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(e))
