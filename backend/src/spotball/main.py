from __future__ import annotations

import logging
from pathlib import Path
from typing import Any

from fastapi import Depends, FastAPI, Header, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response
from mangum import Mangum

from .auth import AuthorizationGateway, Credentials
from .config import Settings, load_dotenv_file
from .domain import (
    AdminLoginRequest,
    AssignTicketsRequest,
    AuthenticateParticipantRequest,
    Competition,
    CreateCompetitionRequest,
    FinalResultRequest,
    Participant,
    PublicCompetition,
    RegisterParticipantRequest,
    SubmitEntriesRequest,
    VerifyPasswordRequest,
    WinnerResult,
    WinnerRow,
)
from .errors import (
    CapacityError,
    Conflict,
    CoreError,
    Forbidden,
    NotFound,
    Precondition,
    Unauthenticated,
    ValidationFailed,
)
from .export import export_result_rows, write_csv
from .lifecycle import CompetitionLocks, TicketLifecycle, has_completed_entry
from .ranking import WinnerComputation
from .store import Store, build_store
from .tokens import TokenService

logger = logging.getLogger(__name__)

_STATUS: list[tuple[type[CoreError], int]] = [
    (Unauthenticated, 401),
    (Forbidden, 403),
    (ValidationFailed, 400),
    (NotFound, 404),
    (Conflict, 409),
    (CapacityError, 400),
    (Precondition, 409),
]


def _status_for(exc: CoreError) -> int:
    for cls, status in _STATUS:
        if isinstance(exc, cls):
            return status
    return 400


def _success(data: Any, status_code: int = 200) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content=jsonable_encoder({"status": "success", "data": data}),
    )


def _competition_view(competition: Competition, tickets_sold: int) -> dict[str, Any]:
    view = competition.model_dump(exclude={"invite_password_hash"})
    view["tickets_sold"] = tickets_sold
    view["remaining_slots"] = max(0, competition.max_entries - tickets_sold)
    return view


def _participant_view(participant: Participant) -> dict[str, Any]:
    return {
        "id": participant.id,
        "name": participant.name,
        "phone": participant.phone,
        "email": participant.email,
        "tickets_purchased": len(participant.tickets),
        "entry_completed": has_completed_entry(participant),
    }


def _winner_view(row: WinnerRow) -> dict[str, Any]:
    view = row.model_dump()
    view["distance"] = round(row.distance, 6)
    return view


def _result_view(result: WinnerResult) -> dict[str, Any]:
    return {
        "result": {
            "competition_id": result.competition_id,
            "final_judge_x": result.final_judge_x,
            "final_judge_y": result.final_judge_y,
            "computed_at": result.computed_at,
            "locked": result.locked,
        },
        "winners": [_winner_view(r) for r in result.winners],
        "rankings": [_winner_view(r) for r in result.rows],
    }


def create_app(settings: Settings | None = None, store: Store | None = None) -> FastAPI:
    repo_root = Path(__file__).resolve().parents[3]
    load_dotenv_file(repo_root)
    settings = settings or Settings.from_env()

    logging.basicConfig(
        level=settings.log_level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    app = FastAPI(title="Spot the Ball")

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=False,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    if store is None:
        store = build_store(settings.store_backend)
    tokens = TokenService(settings.jwt_secret)
    gateway = AuthorizationGateway(tokens)
    credentials = Credentials(
        store,
        tokens,
        admin_username=settings.admin_username,
        admin_password_hash=settings.admin_password_hash,
        admin_password=settings.admin_password,
    )
    locks = CompetitionLocks()
    lifecycle = TicketLifecycle(
        store, locks, max_tickets_per_participant=settings.max_tickets_per_participant
    )
    winners = WinnerComputation(store, locks)

    app.state.store = store
    app.state.tokens = tokens
    app.state.lifecycle = lifecycle

    @app.exception_handler(CoreError)
    async def core_error_handler(request: Request, exc: CoreError):
        content: dict[str, Any] = {"status": "fail", "message": exc.message}
        if isinstance(exc, ValidationFailed):
            content["errors"] = [e.model_dump() for e in exc.errors]
        return JSONResponse(status_code=_status_for(exc), content=jsonable_encoder(content))

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError):
        errors = [
            {
                "path": ".".join(str(part) for part in err["loc"][1:]) or str(err["loc"][0]),
                "msg": err["msg"],
                "value": err.get("input"),
            }
            for err in exc.errors()
        ]
        return JSONResponse(
            status_code=400,
            content=jsonable_encoder({"status": "fail", "errors": errors}),
        )

    @app.exception_handler(Exception)
    async def unexpected_error_handler(request: Request, exc: Exception):
        logger.exception("unhandled error on %s %s", request.method, request.url.path)
        return JSONResponse(
            status_code=500, content={"status": "error", "message": "Internal server error"}
        )

    def requires(operation: str):
        def dependency(
            request: Request, authorization: str | None = Header(default=None)
        ) -> dict[str, Any] | None:
            return gateway.authorize_operation(
                operation, authorization, request.path_params.get("competition_id")
            )

        return dependency

    @app.get("/health")
    def health():
        return {"ok": True}

    # ---- public / participant ------------------------------------------------

    @app.post("/api/v1/auth/login")
    def admin_login(req: AdminLoginRequest):
        token = credentials.login_admin(req.username, req.password)
        return _success({"token": token, "admin": {"username": req.username, "role": "ADMIN"}})

    @app.post("/api/v1/competitions/{competition_id}/verify-password")
    def verify_password(competition_id: str, req: VerifyPasswordRequest):
        competition = lifecycle.get_competition(competition_id)
        token = credentials.verify_invite_password(competition, req.password)
        return _success(
            {
                "verified": True,
                "competition_access_token": token,
                "competition": {"id": competition.id, "status": competition.status},
            }
        )

    @app.get("/api/v1/competitions/{competition_id}")
    def get_competition(
        competition_id: str, claims: dict = Depends(requires("get_competition"))
    ):
        competition = lifecycle.get_competition(competition_id)
        sold = lifecycle.tickets_sold(competition_id)
        public = PublicCompetition(
            **competition.model_dump(exclude={"invite_password_hash"}),
            tickets_sold=sold,
            remaining_slots=max(0, competition.max_entries - sold),
        )
        return _success({"competition": public})

    @app.post("/api/v1/competitions/{competition_id}/participants/authenticate")
    def authenticate_participant(
        competition_id: str,
        req: AuthenticateParticipantRequest,
        claims: dict = Depends(requires("authenticate_participant")),
    ):
        lifecycle.get_competition(competition_id)
        participant, token = credentials.authenticate_participant(
            competition_id, req.name, req.phone
        )
        return _success(
            {
                "participant": _participant_view(participant),
                "participant_access_token": token,
                "tickets": participant.tickets,
            }
        )

    @app.get("/api/v1/competitions/{competition_id}/participants/me/tickets")
    def my_tickets(competition_id: str, claims: dict = Depends(requires("my_tickets"))):
        participant = lifecycle.get_participant(competition_id, claims["participantId"])
        return _success(
            {"participant": _participant_view(participant), "tickets": participant.tickets}
        )

    @app.post("/api/v1/competitions/{competition_id}/entries")
    def submit_entries(
        competition_id: str,
        req: SubmitEntriesRequest,
        claims: dict = Depends(requires("submit_markers")),
    ):
        participant = lifecycle.submit_markers(
            competition_id, claims["participantId"], req.tickets
        )
        return _success(
            {
                "message": "Entry submitted successfully",
                "participant": _participant_view(participant),
                "tickets": participant.tickets,
            },
            status_code=201,
        )

    # ---- admin -----------------------------------------------------------------

    @app.get("/api/v1/admin/competitions")
    def list_competitions(claims: dict = Depends(requires("list_competitions"))):
        competitions = [
            _competition_view(c, lifecycle.tickets_sold(c.id))
            for c in sorted(store.list_competitions(), key=lambda c: c.created_at)
        ]
        return _success({"competitions": competitions})

    @app.post("/api/v1/admin/competitions")
    def create_competition(
        req: CreateCompetitionRequest, claims: dict = Depends(requires("create_competition"))
    ):
        competition = lifecycle.create_competition(req)
        return _success({"competition": _competition_view(competition, 0)}, status_code=201)

    @app.post("/api/v1/admin/competitions/{competition_id}/participants")
    def register_participant(
        competition_id: str,
        req: RegisterParticipantRequest,
        claims: dict = Depends(requires("register_participant")),
    ):
        participant = lifecycle.register_participant(
            competition_id, req.name, req.phone, req.email
        )
        return _success({"participant": _participant_view(participant)}, status_code=201)

    @app.delete("/api/v1/admin/competitions/{competition_id}/participants/{participant_id}")
    def delete_participant(
        competition_id: str,
        participant_id: str,
        claims: dict = Depends(requires("delete_participant")),
    ):
        removed = lifecycle.delete_participant(competition_id, participant_id)
        return _success({"deleted": participant_id, "tickets_removed": removed})

    @app.post("/api/v1/admin/competitions/{competition_id}/assign-tickets")
    def assign_tickets(
        competition_id: str,
        req: AssignTicketsRequest,
        claims: dict = Depends(requires("assign_tickets")),
    ):
        tickets = lifecycle.assign_tickets(competition_id, req.participant_id, req.ticket_count)
        sold = lifecycle.tickets_sold(competition_id)
        competition = lifecycle.get_competition(competition_id)
        return _success(
            {
                "message": f"Successfully assigned {len(tickets)} ticket(s)",
                "tickets": tickets,
                "tickets_sold": sold,
                "remaining_slots": max(0, competition.max_entries - sold),
            },
            status_code=201,
        )

    @app.patch("/api/v1/admin/competitions/{competition_id}/close")
    def close_competition(
        competition_id: str, claims: dict = Depends(requires("close_competition"))
    ):
        competition = lifecycle.close_competition(competition_id)
        return _success(
            {"competition": _competition_view(competition, lifecycle.tickets_sold(competition_id))}
        )

    @app.patch("/api/v1/admin/competitions/{competition_id}/final-result")
    def set_final_result(
        competition_id: str,
        req: FinalResultRequest,
        claims: dict = Depends(requires("set_final_judge_point")),
    ):
        competition = lifecycle.set_final_judge_point(
            competition_id, req.final_judge_x, req.final_judge_y
        )
        return _success(
            {"competition": _competition_view(competition, lifecycle.tickets_sold(competition_id))}
        )

    @app.post("/api/v1/admin/competitions/{competition_id}/compute-winner")
    def compute_winner(
        competition_id: str, claims: dict = Depends(requires("compute_winners"))
    ):
        return _success(_result_view(winners.compute_winners(competition_id)))

    @app.post("/api/v1/admin/competitions/{competition_id}/lock-result")
    def lock_result(competition_id: str, claims: dict = Depends(requires("lock_result"))):
        return _success(_result_view(winners.lock_result(competition_id)))

    @app.get("/api/v1/admin/competitions/{competition_id}/results")
    def results(competition_id: str, claims: dict = Depends(requires("get_results"))):
        competition = lifecycle.get_competition(competition_id)
        result = winners.get_result(competition_id)
        data: dict[str, Any] = {
            "competition": _competition_view(competition, lifecycle.tickets_sold(competition_id)),
            "result": None,
            "winners": [],
            "rankings": [],
        }
        if result is not None:
            data.update(_result_view(result))
        return _success(data)

    @app.get("/api/v1/admin/competitions/{competition_id}/export")
    def export(competition_id: str, claims: dict = Depends(requires("export_results"))):
        rows = export_result_rows(store, competition_id)
        filename = f"competition-{competition_id}-results.csv"
        return Response(
            content=write_csv(rows),
            media_type="text/csv",
            headers={"Content-Disposition": f'attachment; filename="{filename}"'},
        )

    logger.info("app created (store=%s)", settings.store_backend)
    return app


app = create_app()
handler = Mangum(app)
