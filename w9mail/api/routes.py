from __future__ import annotations

from typing import List, Optional

from fastapi import APIRouter, Depends, Header, Path, Response

from w9mail.api.schemas import (
    AccountResponse,
    AliasResponse,
    ApiTokenCreated,
    ApiTokenSummary,
    ChangePasswordRequest,
    CreateAccountRequest,
    CreateAccountResponse,
    CreateAliasRequest,
    CreateApiTokenRequest,
    CreateUserRequest,
    DefaultSenderResponse,
    LoginRequest,
    LoginResponse,
    PasswordResetConfirmRequest,
    PasswordResetRequest,
    SendEmailRequest,
    SignupRequest,
    SignupVerifyRequest,
    StatusMessage,
    UpdateAccountRequest,
    UpdateAliasRequest,
    UpdateDefaultSenderRequest,
    UpdateUserRequest,
    UserSummary,
)
from w9mail.service.auth import API_TOKEN_CREATED
from w9mail.service.errors import ConflictError
from w9mail.service.mailboxes import AliasView
from w9mail.service.policy import (
    ALL_ROLES,
    require_password_current,
    require_role,
    require_role_in,
)
from w9mail.service.principal import Principal
from w9mail.service.runtime import get_runtime
from w9mail.service.senders import SenderSummary
from w9mail.storage.models import Account, ApiToken, Role, User

router = APIRouter(prefix="/api")

_ID_PATH = Path(..., min_length=1, max_length=64)


# -- dependencies --------------------------------------------------------------

# Store-bound handlers and dependencies are plain ``def`` so FastAPI runs them in
# its threadpool; async handlers offload store and hashing work themselves.

def get_principal(authorization: Optional[str] = Header(None)) -> Principal:
    """Authenticated caller, even one that still has to change their password."""
    return get_runtime().principals.authenticate(authorization)


async def get_user(principal: Principal = Depends(get_principal)) -> Principal:
    return require_password_current(principal)


async def get_sender_user(principal: Principal = Depends(get_user)) -> Principal:
    return require_role_in(principal, ALL_ROLES)


async def get_admin_user(principal: Principal = Depends(get_user)) -> Principal:
    return require_role(principal, Role.ADMIN)


# -- response mapping ----------------------------------------------------------


def _user_summary(user: User | Principal) -> UserSummary:
    return UserSummary(
        id=user.id,
        email=user.email,
        role=user.role,
        must_change_password=user.must_change_password,
    )


def _account_response(account: Account) -> AccountResponse:
    return AccountResponse(
        id=account.id,
        email=account.email,
        display_name=account.display_name,
        is_active=account.is_active,
    )


def _alias_response(view: AliasView) -> AliasResponse:
    alias, account = view.alias, view.account
    return AliasResponse(
        id=alias.id,
        alias_email=alias.alias_email,
        display_name=alias.display_name,
        is_active=alias.is_active,
        account_id=alias.account_id,
        account_email=account.email if account else None,
        account_display_name=account.display_name if account else None,
        account_is_active=account.is_active if account else None,
    )


def _token_summary(token: ApiToken) -> ApiTokenSummary:
    return ApiTokenSummary(
        id=token.id, name=token.name, created_at=token.created_at, last_used_at=token.last_used_at
    )


def _sender_response(summary: SenderSummary) -> DefaultSenderResponse:
    return DefaultSenderResponse(
        sender_type=summary.sender_type,
        sender_id=summary.sender_id,
        email=summary.email,
        display_label=summary.display_label,
        via_display=summary.via_display,
        is_active=summary.is_active,
    )


# -- auth ----------------------------------------------------------------------


@router.post("/auth/login", response_model=LoginResponse, tags=["auth"])
async def login(body: LoginRequest):
    result = await get_runtime().auth.login(body.email, body.password, body.turnstile_token)
    return LoginResponse(
        token=result.token,
        id=result.user.id,
        email=result.user.email,
        role=result.user.role,
        must_change_password=result.user.must_change_password,
    )


@router.post("/auth/signup", response_model=StatusMessage, tags=["auth"])
async def signup(body: SignupRequest):
    """Start a signup; the account becomes active once the emailed link is followed."""
    outcome = await get_runtime().lifecycle.request_signup(
        body.email, body.password, body.turnstile_token
    )
    return StatusMessage(**outcome.to_dict())


@router.post("/auth/signup/verify", response_model=StatusMessage, tags=["auth"])
async def verify_signup(body: SignupVerifyRequest):
    outcome = await get_runtime().lifecycle.verify_signup(body.token)
    return StatusMessage(**outcome.to_dict())


@router.post("/auth/password-reset", response_model=StatusMessage, tags=["auth"])
async def request_password_reset(body: PasswordResetRequest):
    """Always answers the same way whether or not the address is registered."""
    outcome = await get_runtime().lifecycle.request_reset(body.email, body.turnstile_token)
    return StatusMessage(**outcome.to_dict())


@router.post("/auth/password-reset/confirm", response_model=StatusMessage, tags=["auth"])
async def confirm_password_reset(body: PasswordResetConfirmRequest):
    outcome = await get_runtime().lifecycle.confirm_reset(
        body.token, body.new_password, body.turnstile_token
    )
    return StatusMessage(**outcome.to_dict())


@router.post("/auth/change-password", response_model=StatusMessage, tags=["auth"])
async def change_password(
    body: ChangePasswordRequest, principal: Principal = Depends(get_principal)
):
    outcome = await get_runtime().lifecycle.change_password(
        principal, body.current_password, body.new_password
    )
    return StatusMessage(**outcome.to_dict())


@router.get("/auth/me", response_model=UserSummary, tags=["auth"])
def me(principal: Principal = Depends(get_principal)):
    return _user_summary(principal)


# -- users ---------------------------------------------------------------------


@router.get("/users", response_model=List[UserSummary], tags=["users"])
def list_users(principal: Principal = Depends(get_admin_user)):
    return [_user_summary(user) for user in get_runtime().auth.list_users()]


@router.post("/users", response_model=UserSummary, status_code=201, tags=["users"])
def create_user(body: CreateUserRequest, principal: Principal = Depends(get_admin_user)):
    user = get_runtime().auth.create_user(body.email, body.password, body.role)
    return _user_summary(user)


@router.patch("/users/{user_id}", response_model=UserSummary, tags=["users"])
def update_user(
    body: UpdateUserRequest,
    user_id: str = _ID_PATH,
    principal: Principal = Depends(get_admin_user),
):
    user = get_runtime().auth.update_user(
        user_id,
        password=body.password,
        role=body.role,
        must_change_password=body.must_change_password,
    )
    return _user_summary(user)


@router.delete("/users/{user_id}", status_code=204, tags=["users"])
def delete_user(user_id: str = _ID_PATH, principal: Principal = Depends(get_admin_user)):
    get_runtime().auth.delete_user(principal, user_id)
    return Response(status_code=204)


# -- api tokens ----------------------------------------------------------------


@router.post("/api-tokens", response_model=ApiTokenCreated, status_code=201, tags=["api-tokens"])
def create_api_token(body: CreateApiTokenRequest, principal: Principal = Depends(get_user)):
    """Create an API token; the plaintext is only ever returned here."""
    issued = get_runtime().auth.create_api_token(principal, body.name)
    return ApiTokenCreated(
        id=issued.record.id,
        token=issued.plaintext,
        name=issued.record.name,
        created_at=issued.record.created_at,
        message=API_TOKEN_CREATED,
    )


@router.get("/api-tokens", response_model=List[ApiTokenSummary], tags=["api-tokens"])
def list_api_tokens(principal: Principal = Depends(get_user)):
    return [_token_summary(token) for token in get_runtime().auth.list_api_tokens(principal)]


@router.delete("/api-tokens/{token_id}", status_code=204, tags=["api-tokens"])
def delete_api_token(token_id: str = _ID_PATH, principal: Principal = Depends(get_user)):
    get_runtime().auth.delete_api_token(principal, token_id)
    return Response(status_code=204)


# -- accounts ------------------------------------------------------------------


@router.get("/accounts", response_model=List[AccountResponse], tags=["accounts"])
def list_accounts(principal: Principal = Depends(get_user)):
    return [_account_response(account) for account in get_runtime().mailboxes.list_accounts()]


@router.post("/accounts", response_model=CreateAccountResponse, tags=["accounts"])
def create_account(
    body: CreateAccountRequest, principal: Principal = Depends(get_admin_user)
):
    try:
        account = get_runtime().mailboxes.create_account(
            body.email, body.display_name, body.password, body.is_active
        )
    except ConflictError as exc:
        return CreateAccountResponse(status="error", message=exc.message)
    return CreateAccountResponse(
        status="success",
        message="Account created successfully",
        account=_account_response(account),
    )


@router.patch("/accounts/{account_id}", response_model=AccountResponse, tags=["accounts"])
def update_account(
    body: UpdateAccountRequest,
    account_id: str = _ID_PATH,
    principal: Principal = Depends(get_admin_user),
):
    account = get_runtime().mailboxes.update_account(
        account_id, is_active=body.is_active, password=body.password
    )
    return _account_response(account)


@router.delete("/accounts/{account_id}", status_code=204, tags=["accounts"])
def delete_account(
    account_id: str = _ID_PATH, principal: Principal = Depends(get_admin_user)
):
    """Delete an account with its aliases; a default sender pointing at any of them is cleared."""
    get_runtime().mailboxes.delete_account(account_id)
    return Response(status_code=204)


# -- aliases -------------------------------------------------------------------


@router.get("/aliases", response_model=List[AliasResponse], tags=["aliases"])
def list_aliases(principal: Principal = Depends(get_user)):
    return [_alias_response(view) for view in get_runtime().mailboxes.list_aliases()]


@router.post("/aliases", response_model=AliasResponse, status_code=201, tags=["aliases"])
def create_alias(body: CreateAliasRequest, principal: Principal = Depends(get_admin_user)):
    view = get_runtime().mailboxes.create_alias(
        body.account_id, body.alias_email, body.display_name, body.is_active
    )
    return _alias_response(view)


@router.patch("/aliases/{alias_id}", response_model=AliasResponse, tags=["aliases"])
def update_alias(
    body: UpdateAliasRequest,
    alias_id: str = _ID_PATH,
    principal: Principal = Depends(get_admin_user),
):
    changes = {"account_id": body.account_id, "is_active": body.is_active}
    if "display_name" in body.model_fields_set:
        changes["display_name"] = body.display_name
    view = get_runtime().mailboxes.update_alias(alias_id, **changes)
    return _alias_response(view)


@router.delete("/aliases/{alias_id}", status_code=204, tags=["aliases"])
def delete_alias(alias_id: str = _ID_PATH, principal: Principal = Depends(get_admin_user)):
    get_runtime().mailboxes.delete_alias(alias_id)
    return Response(status_code=204)


# -- default sender ------------------------------------------------------------


@router.get(
    "/settings/default-sender",
    response_model=Optional[DefaultSenderResponse],
    tags=["settings"],
)
def get_default_sender(principal: Principal = Depends(get_admin_user)):
    summary = get_runtime().senders.get_default()
    return _sender_response(summary) if summary else None


@router.put("/settings/default-sender", response_model=DefaultSenderResponse, tags=["settings"])
def set_default_sender(
    body: UpdateDefaultSenderRequest, principal: Principal = Depends(get_admin_user)
):
    summary = get_runtime().senders.set_default(body.sender_type, body.sender_id)
    return _sender_response(summary)


# -- send ----------------------------------------------------------------------


@router.post("/send", response_model=StatusMessage, tags=["send"])
async def send_email(body: SendEmailRequest, principal: Principal = Depends(get_sender_user)):
    outcome = await get_runtime().mailboxes.send_email(
        body.sender, body.to, body.subject, body.body, cc=body.cc, bcc=body.bcc
    )
    return StatusMessage(**outcome.to_dict())
