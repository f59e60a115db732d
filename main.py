import logging

from fastapi import Depends, FastAPI, HTTPException, Request, Response
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from categories import resolve_categories
from config import get_settings
from database import get_db
from models import User
from periods import resolve_month
from recurrence import RecurringMaterializer, local_now
from scheduler import SchedulerManager
from schemas import (
    CancelInvitationIn,
    CategoryIn,
    CheckItemIn,
    InviteIn,
    ListIn,
    ListItemIn,
    LoginIn,
    ProfileIn,
    RegisterIn,
    TokenIn,
    TransactionIn,
)
from services import (
    CategoryService,
    ListService,
    MetricsService,
    PartnerService,
    ServiceError,
    TransactionService,
    UserService,
    scope_user_ids,
)
from sessions import (
    SESSION_COOKIE,
    create_session_token,
    read_session_token,
    session_max_age_secs,
)

logger = logging.getLogger(__name__)

app = FastAPI(title="Couples Budget")

scheduler_manager = SchedulerManager()


@app.on_event("startup")
def startup_event():
    if get_settings().scheduler_enabled:
        scheduler_manager.start()


@app.on_event("shutdown")
def shutdown_event():
    scheduler_manager.stop()


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    errors = []
    for error in exc.errors():
        loc = [str(part) for part in error.get("loc", ()) if part not in ("body", "query", "path")]
        errors.append({"field": ".".join(loc), "message": error.get("msg", "Invalid value")})
    return JSONResponse(
        status_code=400, content={"detail": "Validation failed", "errors": errors}
    )


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception):
    logger.exception(f"unhandled_error: method={request.method} path={request.url.path}")
    return JSONResponse(status_code=500, content={"detail": "Internal server error"})


def current_user(request: Request, db: Session = Depends(get_db)) -> User:
    user_id = read_session_token(request.cookies.get(SESSION_COOKIE, ""))
    user = db.get(User, user_id) if user_id else None
    if not user:
        raise HTTPException(status_code=401, detail="Unauthorized")
    return user


def _category_lookup(db: Session, user_id: str):
    return CategoryService(db, user_id).lookup()


def _set_session(response: Response, user: User) -> None:
    response.set_cookie(
        SESSION_COOKIE,
        create_session_token(user.id),
        max_age=session_max_age_secs(),
        httponly=True,
        samesite="lax",
    )


@app.get("/health")
def health():
    return {"status": "ok"}


@app.post("/auth/register", status_code=201)
def register(payload: RegisterIn, response: Response, db: Session = Depends(get_db)):
    service = UserService(db)
    try:
        user = service.register(payload)
    except ServiceError as exc:
        raise HTTPException(status_code=exc.status_code, detail=str(exc)) from exc
    _set_session(response, user)
    return service.serialize(user)


@app.post("/auth/login")
def login(payload: LoginIn, response: Response, db: Session = Depends(get_db)):
    service = UserService(db)
    try:
        user = service.authenticate(payload)
    except ServiceError as exc:
        raise HTTPException(status_code=exc.status_code, detail=str(exc)) from exc
    _set_session(response, user)
    return service.serialize(user)


@app.post("/auth/logout")
def logout(response: Response):
    response.delete_cookie(SESSION_COOKIE)
    return {"success": True}


@app.get("/profile")
def get_profile(user: User = Depends(current_user), db: Session = Depends(get_db)):
    return UserService(db).serialize(user)


@app.put("/profile")
def update_profile(
    payload: ProfileIn, user: User = Depends(current_user), db: Session = Depends(get_db)
):
    service = UserService(db)
    try:
        updated = service.update_profile(user.id, payload)
    except ServiceError as exc:
        raise HTTPException(status_code=exc.status_code, detail=str(exc)) from exc
    return service.serialize(updated)


@app.get("/categories")
def list_categories(user: User = Depends(current_user), db: Session = Depends(get_db)):
    categories = resolve_categories(db, scope_user_ids(db, user.id))
    return [category.to_dict() for category in categories]


@app.post("/categories", status_code=201)
def create_category(
    payload: CategoryIn, user: User = Depends(current_user), db: Session = Depends(get_db)
):
    return CategoryService(db, user.id).create(payload).to_dict()


@app.put("/categories/{category_id}")
def update_category(
    category_id: str,
    payload: CategoryIn,
    user: User = Depends(current_user),
    db: Session = Depends(get_db),
):
    try:
        category = CategoryService(db, user.id).update(category_id, payload)
    except ServiceError as exc:
        raise HTTPException(status_code=exc.status_code, detail=str(exc)) from exc
    return category.to_dict()


@app.delete("/categories/{category_id}")
def delete_category(
    category_id: str, user: User = Depends(current_user), db: Session = Depends(get_db)
):
    try:
        CategoryService(db, user.id).delete(category_id)
    except ServiceError as exc:
        raise HTTPException(status_code=exc.status_code, detail=str(exc)) from exc
    return {"success": True}


@app.get("/dashboard")
def dashboard(request: Request, user: User = Depends(current_user), db: Session = Depends(get_db)):
    try:
        window = resolve_month(
            request.query_params.get("month"),
            request.query_params.get("year"),
            today=local_now().date(),
        )
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return MetricsService(db, user.id).monthly_summary(window.year, window.month)


@app.get("/transactions")
def list_transactions(
    request: Request, user: User = Depends(current_user), db: Session = Depends(get_db)
):
    service = TransactionService(db, user.id)
    if request.query_params.get("annual") == "true":
        return service.list_annual()
    try:
        window = resolve_month(
            request.query_params.get("month"),
            request.query_params.get("year"),
            today=local_now().date(),
        )
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return service.list_month(window.year, window.month)


@app.post("/transactions", status_code=201)
def create_transaction(
    payload: TransactionIn, user: User = Depends(current_user), db: Session = Depends(get_db)
):
    service = TransactionService(db, user.id)
    try:
        txn = service.create(payload)
    except ServiceError as exc:
        raise HTTPException(status_code=exc.status_code, detail=str(exc)) from exc
    return service.serialize(txn, _category_lookup(db, user.id))


@app.put("/transactions/{transaction_id}")
def update_transaction(
    transaction_id: str,
    payload: TransactionIn,
    user: User = Depends(current_user),
    db: Session = Depends(get_db),
):
    service = TransactionService(db, user.id)
    try:
        txn = service.update(transaction_id, payload)
    except ServiceError as exc:
        raise HTTPException(status_code=exc.status_code, detail=str(exc)) from exc
    return service.serialize(txn, _category_lookup(db, user.id))


@app.delete("/transactions/{transaction_id}")
def delete_transaction(
    transaction_id: str, user: User = Depends(current_user), db: Session = Depends(get_db)
):
    try:
        TransactionService(db, user.id).delete(transaction_id)
    except ServiceError as exc:
        raise HTTPException(status_code=exc.status_code, detail=str(exc)) from exc
    return {"success": True}


@app.get("/lists")
def list_lists(user: User = Depends(current_user), db: Session = Depends(get_db)):
    return ListService(db, user.id).list_lists()


@app.post("/lists", status_code=201)
def create_list(
    payload: ListIn, user: User = Depends(current_user), db: Session = Depends(get_db)
):
    service = ListService(db, user.id)
    return service.serialize_list(service.create_list(payload))


@app.get("/lists/{list_id}")
def get_list(list_id: str, user: User = Depends(current_user), db: Session = Depends(get_db)):
    try:
        return ListService(db, user.id).get_list(list_id)
    except ServiceError as exc:
        raise HTTPException(status_code=exc.status_code, detail=str(exc)) from exc


@app.put("/lists/{list_id}")
def update_list(
    list_id: str,
    payload: ListIn,
    user: User = Depends(current_user),
    db: Session = Depends(get_db),
):
    service = ListService(db, user.id)
    try:
        shopping_list = service.update_list(list_id, payload)
    except ServiceError as exc:
        raise HTTPException(status_code=exc.status_code, detail=str(exc)) from exc
    return service.serialize_list(shopping_list)


@app.delete("/lists/{list_id}")
def delete_list(list_id: str, user: User = Depends(current_user), db: Session = Depends(get_db)):
    try:
        ListService(db, user.id).delete_list(list_id)
    except ServiceError as exc:
        raise HTTPException(status_code=exc.status_code, detail=str(exc)) from exc
    return {"success": True}


@app.post("/lists/{list_id}/items", status_code=201)
def add_list_item(
    list_id: str,
    payload: ListItemIn,
    user: User = Depends(current_user),
    db: Session = Depends(get_db),
):
    service = ListService(db, user.id)
    try:
        item = service.add_item(list_id, payload)
    except ServiceError as exc:
        raise HTTPException(status_code=exc.status_code, detail=str(exc)) from exc
    return service.serialize_item(item, _category_lookup(db, user.id))


@app.put("/lists/{list_id}/items/{item_id}")
def update_list_item(
    list_id: str,
    item_id: str,
    payload: ListItemIn,
    user: User = Depends(current_user),
    db: Session = Depends(get_db),
):
    service = ListService(db, user.id)
    try:
        item = service.update_item(list_id, item_id, payload)
    except ServiceError as exc:
        raise HTTPException(status_code=exc.status_code, detail=str(exc)) from exc
    return service.serialize_item(item, _category_lookup(db, user.id))


@app.delete("/lists/{list_id}/items/{item_id}")
def delete_list_item(
    list_id: str,
    item_id: str,
    user: User = Depends(current_user),
    db: Session = Depends(get_db),
):
    try:
        ListService(db, user.id).delete_item(list_id, item_id)
    except ServiceError as exc:
        raise HTTPException(status_code=exc.status_code, detail=str(exc)) from exc
    return {"success": True}


@app.post("/lists/{list_id}/items/{item_id}/check")
def check_list_item(
    list_id: str,
    item_id: str,
    payload: CheckItemIn,
    user: User = Depends(current_user),
    db: Session = Depends(get_db),
):
    try:
        return ListService(db, user.id).set_checked(list_id, item_id, payload)
    except ServiceError as exc:
        raise HTTPException(status_code=exc.status_code, detail=str(exc)) from exc


@app.post("/partner/invite", status_code=201)
def invite_partner(
    payload: InviteIn, user: User = Depends(current_user), db: Session = Depends(get_db)
):
    try:
        invitation = PartnerService(db).invite_partner(user.id, payload.to_user_id)
    except ServiceError as exc:
        raise HTTPException(status_code=exc.status_code, detail=str(exc)) from exc
    return {
        "id": invitation.id,
        "status": invitation.status.value,
        "expiresAt": invitation.expires_at.isoformat(),
    }


@app.post("/partner/accept")
def accept_invitation(
    payload: TokenIn, user: User = Depends(current_user), db: Session = Depends(get_db)
):
    try:
        return PartnerService(db).accept_invitation(payload.token, user.id)
    except ServiceError as exc:
        raise HTTPException(status_code=exc.status_code, detail=str(exc)) from exc


@app.post("/partner/decline")
def decline_invitation(
    payload: TokenIn, user: User = Depends(current_user), db: Session = Depends(get_db)
):
    try:
        PartnerService(db).decline_invitation(payload.token, user.id)
    except ServiceError as exc:
        raise HTTPException(status_code=exc.status_code, detail=str(exc)) from exc
    return {"success": True}


@app.post("/partner/cancel")
def cancel_invitation(
    payload: CancelInvitationIn,
    user: User = Depends(current_user),
    db: Session = Depends(get_db),
):
    try:
        PartnerService(db).cancel_invitation(payload.invitation_id, user.id)
    except ServiceError as exc:
        raise HTTPException(status_code=exc.status_code, detail=str(exc)) from exc
    return {"success": True}


@app.post("/partner/remove")
def remove_partner(user: User = Depends(current_user), db: Session = Depends(get_db)):
    try:
        PartnerService(db).remove_partnership(user.id)
    except ServiceError as exc:
        raise HTTPException(status_code=exc.status_code, detail=str(exc)) from exc
    return {"success": True}


@app.get("/partner/info")
def partner_info(user: User = Depends(current_user), db: Session = Depends(get_db)):
    return PartnerService(db).partner_info(user.id)


@app.get("/partner/search")
def search_users(
    request: Request, user: User = Depends(current_user), db: Session = Depends(get_db)
):
    query = request.query_params.get("q", "")
    return PartnerService(db).search_users(query, user.id)


@app.get("/partner/sent-invitations")
def sent_invitations(user: User = Depends(current_user), db: Session = Depends(get_db)):
    return PartnerService(db).sent_invitations(user.id)


@app.get("/partner/received-invitations")
def received_invitations(user: User = Depends(current_user), db: Session = Depends(get_db)):
    return PartnerService(db).received_invitations(user.id)


@app.post("/cron/recurring-transactions")
def run_recurring_transactions(request: Request, db: Session = Depends(get_db)):
    secret = get_settings().cron_secret
    if secret and request.headers.get("authorization") != f"Bearer {secret}":
        raise HTTPException(status_code=401, detail="Unauthorized")
    result = RecurringMaterializer(db).run()
    return result.to_dict()


def main():
    import uvicorn

    uvicorn.run("main:app", host="0.0.0.0", port=8000, reload=False)


if __name__ == "__main__":
    main()
