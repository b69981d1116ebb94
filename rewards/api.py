import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import ValidationError as PydanticValidationError

from oracle.bridge import OracleBridge, build_bridge
from oracle.reconciliation import ReconciliationJob, run_periodically

from .config import Settings, settings as default_settings
from .errors import RewardsError, ValidationError
from .events import StreamSubscription, Topics
from .models import (
    BalanceResponse,
    CompleteQuestRequest,
    CreateRedemptionRequest,
    CreateSubmissionRequest,
    DashboardStats,
    MintTokensRequest,
    RedemptionListResponse,
    RedemptionQuery,
    RedemptionResponse,
    RedemptionStatus,
    ReviewSubmissionRequest,
    SubmissionListResponse,
    SubmissionQuery,
    SubmissionResponse,
    TransactionHistoryResponse,
    TransactionKind,
    TransactionQuery,
    UpdateRedemptionRequest,
    UserResponse,
)
from .service import RewardsService

logger = logging.getLogger(__name__)


def _describe_errors(errors: list[dict]) -> str:
    parts = []
    for error in errors:
        location = ".".join(str(part) for part in error.get("loc", ()) if part != "body")
        parts.append(f"{location}: {error['msg']}" if location else error["msg"])
    return "; ".join(parts)


def create_app(
    settings: Optional[Settings] = None,
    service: Optional[RewardsService] = None,
    bridge: Optional[OracleBridge] = None,
    root_path: str = "",
) -> FastAPI:
    settings = settings or default_settings
    logging.basicConfig(
        level=settings.LOG_LEVEL,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    if service is None:
        if bridge is None:
            bridge = build_bridge(settings)
        service = RewardsService(
            bridge=bridge,
            short_ttl=settings.CACHE_TTL_SHORT,
            medium_ttl=settings.CACHE_TTL_MEDIUM,
        )
    elif bridge is None:
        bridge = service.submissions.bridge
    job = ReconciliationJob(service.store, bridge, service.cache, service.bus)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        task = None
        if settings.RECONCILE_INTERVAL_SECONDS > 0 and job.configured:
            task = asyncio.create_task(run_periodically(job, settings.RECONCILE_INTERVAL_SECONDS))
        yield
        if task is not None:
            task.cancel()

    app = FastAPI(
        title="Reward Ledger API",
        description="Off-chain reward ledger with redemptions, realtime events and on-chain reconciliation",
        version="1.0.0",
        root_path=root_path,
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.service = service
    app.state.job = job

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(RewardsError)
    async def rewards_error_handler(request: Request, exc: RewardsError):
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError):
        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content={"success": False, "error": _describe_errors(exc.errors())},
        )

    @app.exception_handler(PydanticValidationError)
    async def model_validation_handler(request: Request, exc: PydanticValidationError):
        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content={"success": False, "error": _describe_errors(exc.errors())},
        )

    @app.get("/health", tags=["System"])
    def health_check():
        return {
            "success": True,
            "status": "healthy",
            "service": "reward-ledger",
            "oracle_configured": job.configured,
        }

    # --- users ---

    @app.get("/users/{address}", response_model=UserResponse, tags=["Users"])
    def get_user(address: str) -> UserResponse:
        return service.get_user(address)

    @app.get("/users/{address}/balance", response_model=BalanceResponse, tags=["Users"])
    def get_balance(address: str) -> BalanceResponse:
        return service.get_balance(address)

    @app.get("/users/{address}/transactions", response_model=TransactionHistoryResponse, tags=["Users"])
    def get_transactions(
        address: str, kind: Optional[TransactionKind] = None, limit: int = 50
    ) -> TransactionHistoryResponse:
        return service.list_transactions(TransactionQuery(wallet_address=address, kind=kind, limit=limit))

    # --- submissions ---

    @app.post("/submissions", response_model=SubmissionResponse, status_code=status.HTTP_201_CREATED, tags=["Submissions"])
    def create_submission(request: CreateSubmissionRequest) -> SubmissionResponse:
        return service.submissions.create_submission(request)

    @app.get("/submissions", response_model=SubmissionListResponse, tags=["Submissions"])
    def list_submissions(
        wallet_address: Optional[str] = None, verified: Optional[bool] = None, limit: int = 50
    ) -> SubmissionListResponse:
        query = SubmissionQuery(wallet_address=wallet_address, verified=verified, limit=limit)
        submissions = service.list_submissions(query)
        return SubmissionListResponse(submissions=submissions, count=len(submissions))

    @app.patch("/admin/submissions/{submission_id}", response_model=SubmissionResponse, tags=["Admin"])
    def review_submission(submission_id: str, request: ReviewSubmissionRequest) -> SubmissionResponse:
        return service.submissions.review_submission(submission_id, request)

    @app.post("/admin/submissions/{submission_id}/certify", response_model=SubmissionResponse, tags=["Admin"])
    def retry_certification(submission_id: str) -> SubmissionResponse:
        submission = service.submissions.retry_certification(submission_id)
        return SubmissionResponse(submission=submission, message=f"Certification {submission.certification_status.value}")

    # --- redemptions ---

    @app.post("/redemptions", response_model=RedemptionResponse, status_code=status.HTTP_201_CREATED, tags=["Redemptions"])
    def create_redemption(request: CreateRedemptionRequest) -> RedemptionResponse:
        return service.redemptions.create_redemption(request)

    @app.get("/redemptions", response_model=RedemptionListResponse, tags=["Redemptions"])
    def list_redemptions(
        wallet_address: Optional[str] = None, status: Optional[RedemptionStatus] = None, limit: int = 50
    ) -> RedemptionListResponse:
        query = RedemptionQuery(wallet_address=wallet_address, status=status, limit=limit)
        redemptions = service.list_redemptions(query)
        return RedemptionListResponse(redemptions=redemptions, count=len(redemptions))

    @app.get("/redemptions/{redemption_id}", tags=["Redemptions"])
    def get_redemption(redemption_id: str):
        return {"success": True, "redemption": service.redemptions.get_redemption(redemption_id)}

    @app.patch("/admin/redemptions/{redemption_id}", response_model=RedemptionResponse, tags=["Admin"])
    def update_redemption(redemption_id: str, request: UpdateRedemptionRequest) -> RedemptionResponse:
        return service.redemptions.update_status(redemption_id, request)

    @app.get("/admin/stats", response_model=DashboardStats, tags=["Admin"])
    def dashboard_stats() -> DashboardStats:
        return service.dashboard_stats()

    # --- oracle ---

    @app.post("/oracle/mint-tokens", tags=["Oracle"])
    def mint_tokens(request: MintTokensRequest):
        result, entry = job.mint_for_user(request.user_address, request.amount)
        return {
            **result.model_dump(mode="json"),
            "message": f"Successfully minted {result.amount} tokens",
            "transaction": entry,
        }

    @app.get("/oracle/mint-tokens", tags=["Oracle"])
    def oracle_status():
        if bridge is None:
            return {"success": True, "configured": False, "status": "not_configured"}
        return {"success": True, "configured": True, **bridge.status()}

    @app.post("/oracle/complete-quest", tags=["Oracle"])
    def complete_quest(request: CompleteQuestRequest):
        result = job.require_bridge().certify_quest_completion(
            request.user_address, request.quest_id, request.proof_data
        )
        message = "Quest already certified" if result.already_certified else "Quest completion recorded on-chain"
        return {**result.model_dump(mode="json"), "message": message}

    # --- reconciliation ---

    @app.post("/reconciliation/run", tags=["Reconciliation"])
    def run_reconciliation():
        report = job.run()
        return {
            **report.model_dump(mode="json"),
            "total_minted": report.total_minted,
            "total_burned": report.total_burned,
        }

    @app.get("/reconciliation/status", tags=["Reconciliation"])
    def reconciliation_status():
        return job.status()

    # --- realtime ---

    @app.get("/realtime", tags=["Realtime"])
    async def realtime(request: Request, events: Optional[str] = None):
        topics = [e.strip() for e in events.split(",") if e.strip()] if events else list(Topics.ALL)
        unknown = [t for t in topics if t not in Topics.ALL]
        if unknown:
            raise ValidationError(f"Unknown event types: {', '.join(unknown)}", {"available": list(Topics.ALL)})

        subscription = StreamSubscription(
            service.bus, topics, heartbeat_interval=settings.REALTIME_HEARTBEAT_SECONDS
        )
        logger.info("Realtime stream opened (%s)", ",".join(topics))
        return StreamingResponse(
            subscription.stream(request.is_disconnected),
            media_type="text/event-stream",
            headers={"Cache-Control": "no-cache", "Connection": "keep-alive", "X-Accel-Buffering": "no"},
        )

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
