from typing import Optional

from fastapi import Depends, FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from referral.models import (
    CompleteInvitationRequest,
    CompletionResult,
    InvitationPage,
    InvitationStats,
    InvitationStatus,
    InvitationView,
    InvitedUserPage,
    LeaderboardEntry,
    Metric,
    NetworkStats,
    PathHop,
    Period,
    RewardPage,
    RewardStats,
    TreeNode,
    UserRank,
    ValidatedCode,
)

from .container import PointsSystem
from .errors import (
    AlreadyInvitedError,
    AlreadyRewardedError,
    CodeAlreadyUsedError,
    DuplicateCodeError,
    InsufficientBalanceError,
    LedgerServiceError,
    NotFoundError,
    ReferralCycleError,
    ValidationError,
)
from .logging_config import configure_logging
from .models import (
    AdminCreditRequest,
    AppendResult,
    DownloadSpendRequest,
    LedgerHistoryResponse,
    PurchaseRequest,
    Reconciliation,
    RecordType,
    RefundRequest,
    RegisterUserRequest,
    SystemPointsStats,
    TrendPoint,
    UserAccount,
    UserBalance,
    UserPointsSummary,
    VipUpgradeRequest,
)
from .ratelimit import SlidingWindowRateLimiter

CONFLICT_ERRORS = (
    InsufficientBalanceError,
    AlreadyRewardedError,
    CodeAlreadyUsedError,
    DuplicateCodeError,
    AlreadyInvitedError,
    ReferralCycleError,
)


class RateLimitExceeded(Exception):
    def __init__(self, retry_after: float):
        super().__init__("Rate limit exceeded")
        self.retry_after = retry_after


def status_for(error: LedgerServiceError) -> int:
    if isinstance(error, NotFoundError):
        return status.HTTP_404_NOT_FOUND
    if isinstance(error, CONFLICT_ERRORS):
        return status.HTTP_409_CONFLICT
    if isinstance(error, ValidationError):
        return status.HTTP_422_UNPROCESSABLE_ENTITY
    return status.HTTP_400_BAD_REQUEST


def create_app(
    system: Optional[PointsSystem] = None,
    limiter: Optional[SlidingWindowRateLimiter] = None,
) -> FastAPI:
    system = system or PointsSystem()
    configure_logging(system.settings)
    system.init_schema()
    settings = system.settings
    if limiter is None:
        limiter = SlidingWindowRateLimiter(
            settings.RATE_LIMIT_REQUESTS, settings.RATE_LIMIT_WINDOW_SECONDS
        )

    app = FastAPI(
        title="Points Ledger API",
        description="Points ledger, earning and spending, invitation network and leaderboards",
        version="1.0.0",
    )
    app.state.system = system
    app.state.limiter = limiter

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(LedgerServiceError)
    def handle_service_error(request: Request, exc: LedgerServiceError) -> JSONResponse:
        return JSONResponse(
            status_code=status_for(exc),
            content={"detail": str(exc), "error": type(exc).__name__},
        )

    def rate_limited(request: Request) -> None:
        key = request.client.host if request.client else "anonymous"
        if not limiter.allow(key):
            raise RateLimitExceeded(limiter.retry_after(key))

    @app.exception_handler(RateLimitExceeded)
    def handle_rate_limit(request: Request, exc: RateLimitExceeded) -> JSONResponse:
        return JSONResponse(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            content={"detail": "Rate limit exceeded"},
            headers={"Retry-After": str(int(exc.retry_after) + 1)},
        )

    writes = [Depends(rate_limited)]

    @app.get("/health", tags=["System"])
    def health_check():
        return {"status": "healthy", "service": settings.APP_NAME}

    # -- users and ledger --

    @app.post("/users", response_model=UserAccount, status_code=status.HTTP_201_CREATED,
              tags=["Users"], dependencies=writes)
    def register_user(request: RegisterUserRequest) -> UserAccount:
        return system.ledger.register_user(request.username, request.email)

    @app.get("/users/{user_id}", response_model=UserAccount, tags=["Users"])
    def get_user(user_id: int) -> UserAccount:
        return system.ledger.get_user(user_id)

    @app.get("/users/{user_id}/balance", response_model=UserBalance, tags=["Users"])
    def get_user_balance(user_id: int) -> UserBalance:
        return system.ledger.balance_summary(user_id)

    @app.get("/users/{user_id}/records", response_model=LedgerHistoryResponse, tags=["Users"])
    def get_user_records(
        user_id: int,
        page: int = 1,
        page_size: int = 20,
        record_type: Optional[RecordType] = None,
    ) -> LedgerHistoryResponse:
        return system.ledger.list_records(user_id, page, page_size, record_type)

    @app.get("/users/{user_id}/reconcile", response_model=Reconciliation, tags=["Users"])
    def reconcile_user(user_id: int) -> Reconciliation:
        return system.ledger.reconcile(user_id)

    # -- earning --

    @app.get("/rules", tags=["Earning"])
    def get_earning_rules():
        return [rule.to_dict() for rule in system.earning.get_earning_rules()]

    @app.post("/users/{user_id}/checkin", response_model=AppendResult, tags=["Earning"], dependencies=writes)
    def daily_checkin(user_id: int) -> AppendResult:
        return system.earning.earn_by_daily_checkin(user_id)

    @app.post("/users/{user_id}/credits", response_model=AppendResult, tags=["Earning"], dependencies=writes)
    def admin_credit(user_id: int, request: AdminCreditRequest) -> AppendResult:
        return system.earning.earn_by_admin(
            user_id, request.points, request.description, operator_id=request.operator_id
        )

    # -- consumption --

    @app.post("/users/{user_id}/purchases", response_model=AppendResult, tags=["Consumption"], dependencies=writes)
    def purchase(user_id: int, request: PurchaseRequest) -> AppendResult:
        return system.consumption.spend_for_purchase(
            user_id, request.points, request.description, request.product_id
        )

    @app.post("/users/{user_id}/downloads", response_model=AppendResult, tags=["Consumption"], dependencies=writes)
    def paid_download(user_id: int, request: DownloadSpendRequest) -> AppendResult:
        return system.consumption.spend_for_download(user_id, request.resource_id, request.cost)

    @app.post("/users/{user_id}/vip", response_model=AppendResult, tags=["Consumption"], dependencies=writes)
    def vip_upgrade(user_id: int, request: VipUpgradeRequest) -> AppendResult:
        return system.consumption.spend_for_vip_upgrade(user_id, request.tier, request.cost)

    @app.post("/users/{user_id}/refunds", response_model=AppendResult, tags=["Consumption"], dependencies=writes)
    def refund(user_id: int, request: RefundRequest) -> AppendResult:
        return system.consumption.refund(
            user_id, request.original_record_id, request.points, request.reason
        )

    # -- statistics --

    @app.get("/users/{user_id}/summary", response_model=UserPointsSummary, tags=["Statistics"])
    def user_summary(user_id: int) -> UserPointsSummary:
        return system.statistics.user_summary(user_id)

    @app.get("/users/{user_id}/trend", response_model=list[TrendPoint], tags=["Statistics"])
    def points_trend(user_id: int, days: int = 7) -> list[TrendPoint]:
        return system.statistics.points_trend(user_id, days)

    @app.get("/stats/system", response_model=SystemPointsStats, tags=["Statistics"])
    def system_stats() -> SystemPointsStats:
        return system.statistics.system_stats()

    # -- invitations --

    @app.post("/users/{user_id}/invitations", response_model=InvitationView,
              status_code=status.HTTP_201_CREATED, tags=["Invitations"], dependencies=writes)
    def issue_invitation(user_id: int, ttl_hours: int = 0) -> InvitationView:
        return system.invitations.issue_invitation(user_id, ttl_hours)

    @app.get("/users/{user_id}/invitations", response_model=InvitationPage, tags=["Invitations"])
    def list_invitations(
        user_id: int,
        status_filter: Optional[InvitationStatus] = None,
        page: int = 1,
        page_size: int = 20,
    ) -> InvitationPage:
        return system.invitations.list_invitations(user_id, status_filter, page, page_size)

    @app.get("/users/{user_id}/invitations/stats", response_model=InvitationStats, tags=["Invitations"])
    def invitation_stats(user_id: int) -> InvitationStats:
        return system.invitations.invitation_stats(user_id)

    @app.get("/invitations/{code}", response_model=ValidatedCode, tags=["Invitations"])
    def validate_code(code: str) -> ValidatedCode:
        return system.invitations.validate_code(code)

    @app.post("/invitations/{code}/complete", response_model=CompletionResult,
              tags=["Invitations"], dependencies=writes)
    def complete_invitation(code: str, request: CompleteInvitationRequest) -> CompletionResult:
        return system.invitations.complete_invitation(code, request.invitee_id, request.reward_points)

    @app.post("/invitations/expire", tags=["Invitations"], dependencies=writes)
    def expire_invitations():
        return {"expired": system.invitations.expire_old_invitations()}

    # -- referral network --

    @app.get("/users/{user_id}/tree", response_model=TreeNode, tags=["Network"])
    def invitation_tree(user_id: int, max_depth: int = 0) -> TreeNode:
        return system.graph.build_tree(user_id, max_depth)

    @app.get("/users/{user_id}/path", response_model=list[PathHop], tags=["Network"])
    def invitation_path(user_id: int) -> list[PathHop]:
        return system.graph.path_to_root(user_id)

    @app.get("/users/{user_id}/invited", response_model=InvitedUserPage, tags=["Network"])
    def invited_users(user_id: int, page: int = 1, page_size: int = 20) -> InvitedUserPage:
        return system.graph.invited_users(user_id, page, page_size)

    @app.get("/users/{user_id}/network", response_model=NetworkStats, tags=["Network"])
    def network_stats(user_id: int) -> NetworkStats:
        return system.graph.network_stats(user_id)

    @app.get("/users/{user_id}/rewards", response_model=RewardPage, tags=["Network"])
    def reward_history(user_id: int, page: int = 1, page_size: int = 20) -> RewardPage:
        return system.rewards.reward_history(user_id, page, page_size)

    @app.get("/users/{user_id}/rewards/stats", response_model=RewardStats, tags=["Network"])
    def reward_stats(user_id: int) -> RewardStats:
        return system.rewards.reward_stats(user_id)

    # -- leaderboard --

    @app.get("/leaderboard", response_model=list[LeaderboardEntry], tags=["Leaderboard"])
    def leaderboard(
        period: Period = Period.ALL,
        metric: Metric = Metric.INVITE_COUNT,
        limit: int = 10,
        offset: int = 0,
    ) -> list[LeaderboardEntry]:
        return system.leaderboard.get_leaderboard(period, metric, limit, offset)

    @app.get("/users/{user_id}/rank", response_model=UserRank, tags=["Leaderboard"])
    def user_rank(user_id: int, period: Period = Period.ALL, metric: Metric = Metric.INVITE_COUNT) -> UserRank:
        return system.leaderboard.get_user_rank(user_id, period, metric)

    return app


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(create_app(), host="0.0.0.0", port=8000)
