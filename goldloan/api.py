"""
Gold Loan API Module

Thin FastAPI adapter over LoanService. Request bodies are pydantic models;
domain errors map onto HTTP status codes:

    ValidationError     -> 400
    NotFound            -> 404
    GuardViolation      -> 409 (with the guard name)
    ConcurrencyConflict -> 503
"""

from datetime import date
from decimal import Decimal
from typing import Any, Dict, List, Optional

from fastapi import Depends, FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
import uvicorn

from . import __version__
from .config import get_config
from .errors import ConcurrencyConflict, GuardViolation, NotFound, ValidationError
from .events import _serialize
from .loans import Actor, GoldItem, LoanParams, Payment, loan_to_dict
from .logging_config import setup_logging
from .service import LoanService
from .storage import create_storage


# --- Schemas -----------------------------------------------------------------

class ActorModel(BaseModel):
    id: str
    name: str

    def to_actor(self) -> Actor:
        return Actor(id=self.id, name=self.name)


class GoldItemModel(BaseModel):
    description: str
    gross_weight: Decimal = Field(..., description="Grams")
    net_weight: Decimal = Field(..., description="Grams")
    photo_ids: List[str] = []

    def to_gold_item(self) -> GoldItem:
        return GoldItem(
            description=self.description,
            gross_weight=self.gross_weight,
            net_weight=self.net_weight,
            photo_ids=tuple(self.photo_ids)
        )


class CreateLoanRequest(BaseModel):
    customer_id: str
    principal: Decimal
    term_months: int
    interest_rate: Decimal = Field(..., description="Annual rate in percent")
    gold_items: List[GoldItemModel] = []
    disbursement_date: Optional[date] = None


class PaymentRequest(BaseModel):
    amount: Decimal
    method: str = Field(..., description="handcash or online")
    transaction_id: Optional[str] = None
    bank_name: Optional[str] = None
    entered_by: Optional[ActorModel] = None


class ApprovePaymentRequest(BaseModel):
    approved_by: Optional[ActorModel] = None


class UpgradeRequest(BaseModel):
    reason: str = "manual_upgrade"
    allow_top_tier: bool = False
    by: Optional[ActorModel] = None


class ScheduleGoldReturnRequest(BaseModel):
    scheduled_date: Optional[date] = None
    notes: str = ""


class GoldReturnedRequest(BaseModel):
    returned_by: Optional[ActorModel] = None
    notes: str = ""


class AuctionActionRequest(BaseModel):
    notes: str = ""
    by: Optional[ActorModel] = None


class ScheduleAuctionRequest(AuctionActionRequest):
    auction_date: date


class AuctionedRequest(AuctionActionRequest):
    auction_date: Optional[date] = None


def _actor(model: Optional[ActorModel]) -> Optional[Actor]:
    return model.to_actor() if model else None


def _payment_to_dict(payment: Payment) -> Dict[str, Any]:
    return {
        'payment_id': payment.payment_id,
        'amount': str(payment.amount),
        'date': payment.date.isoformat(),
        'method': payment.method.value,
        'installment_number': payment.installment_number,
        'remaining_balance': str(payment.remaining_balance),
        'transaction_id': payment.transaction_id,
        'bank_name': payment.bank_name,
        'status': payment.status.value,
    }


# --- Application -------------------------------------------------------------

def get_service(request: Request) -> LoanService:
    return request.app.state.service


def create_app(service: Optional[LoanService] = None) -> FastAPI:
    """
    Create and configure the FastAPI application

    Args:
        service: Loan service to expose; built from configuration when omitted
    """
    if service is None:
        config = get_config()
        setup_logging(config.log_level, "goldloan", config.log_format, config.log_file)
        service = LoanService(create_storage(config.database_url), config=config)

    app = FastAPI(
        title="Gold Loan API",
        description="Gold loan lifecycle: repayment, rate upgrades, gold return and auction",
        version=__version__,
        docs_url="/docs",
        redoc_url="/redoc"
    )
    app.state.service = service

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(ValidationError)
    async def validation_error_handler(request: Request, exc: ValidationError):
        return JSONResponse(status_code=status.HTTP_400_BAD_REQUEST, content={"detail": str(exc)})

    @app.exception_handler(GuardViolation)
    async def guard_violation_handler(request: Request, exc: GuardViolation):
        return JSONResponse(
            status_code=status.HTTP_409_CONFLICT,
            content={"detail": exc.message, "guard": exc.guard}
        )

    @app.exception_handler(NotFound)
    async def not_found_handler(request: Request, exc: NotFound):
        return JSONResponse(status_code=status.HTTP_404_NOT_FOUND, content={"detail": str(exc)})

    @app.exception_handler(ConcurrencyConflict)
    async def conflict_handler(request: Request, exc: ConcurrencyConflict):
        return JSONResponse(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            content={"detail": str(exc)}
        )

    # Health check endpoint
    @app.get("/health")
    async def health_check():
        return {
            "status": "healthy",
            "service": "goldloan_api",
            "version": __version__
        }

    @app.post("/loans", status_code=status.HTTP_201_CREATED)
    async def create_loan(request: CreateLoanRequest, service: LoanService = Depends(get_service)):
        """Originate and disburse a new loan"""
        loan = service.originate(LoanParams(
            customer_id=request.customer_id,
            principal=request.principal,
            term_months=request.term_months,
            interest_rate=request.interest_rate,
            gold_items=tuple(item.to_gold_item() for item in request.gold_items),
            disbursement_date=request.disbursement_date
        ))
        return loan_to_dict(loan)

    @app.get("/loans/{loan_id}")
    async def get_loan(loan_id: str, service: LoanService = Depends(get_service)):
        return loan_to_dict(service.get_loan(loan_id))

    @app.get("/loans/{loan_id}/repayment-preview")
    async def repayment_preview(
        loan_id: str,
        as_of: Optional[date] = None,
        service: LoanService = Depends(get_service)
    ):
        """Amount that would close the loan on a date (today by default)"""
        return service.calculate_early_repayment_amount(loan_id, as_of).to_dict()

    @app.post("/loans/{loan_id}/payments", status_code=status.HTTP_201_CREATED)
    async def record_payment(
        loan_id: str,
        request: PaymentRequest,
        service: LoanService = Depends(get_service)
    ):
        loan, payment = service.record_payment(
            loan_id,
            request.amount,
            request.method,
            entered_by=_actor(request.entered_by),
            transaction_id=request.transaction_id,
            bank_name=request.bank_name
        )
        return {"payment": _payment_to_dict(payment), "loan": loan_to_dict(loan)}

    @app.patch("/loans/{loan_id}/payments/{payment_id}/approve")
    async def approve_payment(
        loan_id: str,
        payment_id: str,
        request: Optional[ApprovePaymentRequest] = None,
        service: LoanService = Depends(get_service)
    ):
        loan, payment = service.approve_payment(
            loan_id, payment_id, _actor(request.approved_by) if request else None
        )
        return {"payment": _payment_to_dict(payment), "loan": loan_to_dict(loan)}

    @app.post("/loans/{loan_id}/upgrade")
    async def upgrade_interest_rate(
        loan_id: str,
        request: UpgradeRequest,
        service: LoanService = Depends(get_service)
    ):
        loan, outcome = service.upgrade_interest_rate(
            loan_id, request.reason, request.allow_top_tier, _actor(request.by)
        )
        return {"upgrade": outcome.to_dict(), "loan": loan_to_dict(loan)}

    @app.get("/loans/{loan_id}/gold-return")
    async def gold_return_summary(loan_id: str, service: LoanService = Depends(get_service)):
        return _serialize(service.gold_return_summary(loan_id))

    @app.post("/loans/{loan_id}/gold-return/schedule")
    async def schedule_gold_return(
        loan_id: str,
        request: ScheduleGoldReturnRequest,
        service: LoanService = Depends(get_service)
    ):
        return loan_to_dict(service.schedule_gold_return(loan_id, request.scheduled_date, request.notes))

    @app.post("/loans/{loan_id}/gold-return/returned")
    async def mark_gold_returned(
        loan_id: str,
        request: GoldReturnedRequest,
        service: LoanService = Depends(get_service)
    ):
        return loan_to_dict(
            service.mark_gold_returned(loan_id, _actor(request.returned_by), request.notes)
        )

    @app.get("/loans/{loan_id}/auction")
    async def auction_summary(loan_id: str, service: LoanService = Depends(get_service)):
        return _serialize(service.auction_summary(loan_id))

    @app.post("/loans/{loan_id}/auction/ready")
    async def mark_ready_for_auction(
        loan_id: str,
        request: AuctionActionRequest,
        service: LoanService = Depends(get_service)
    ):
        return loan_to_dict(service.mark_ready_for_auction(loan_id, request.notes, _actor(request.by)))

    @app.post("/loans/{loan_id}/auction/schedule")
    async def schedule_auction(
        loan_id: str,
        request: ScheduleAuctionRequest,
        service: LoanService = Depends(get_service)
    ):
        return loan_to_dict(
            service.schedule_auction(loan_id, request.auction_date, request.notes, _actor(request.by))
        )

    @app.post("/loans/{loan_id}/auction/auctioned")
    async def mark_as_auctioned(
        loan_id: str,
        request: AuctionedRequest,
        service: LoanService = Depends(get_service)
    ):
        return loan_to_dict(
            service.mark_as_auctioned(loan_id, request.auction_date, request.notes, _actor(request.by))
        )

    @app.post("/loans/{loan_id}/auction/cancel")
    async def cancel_auction(
        loan_id: str,
        request: AuctionActionRequest,
        service: LoanService = Depends(get_service)
    ):
        return loan_to_dict(service.cancel_auction(loan_id, request.notes, _actor(request.by)))

    return app


def run_server(host: str = "0.0.0.0", port: int = 8090, debug: bool = False):
    """Run the FastAPI server"""
    uvicorn.run(
        "goldloan.api:create_app",
        factory=True,
        host=host,
        port=port,
        reload=debug,
        log_level="info"
    )
