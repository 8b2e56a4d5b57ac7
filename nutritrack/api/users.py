"""
User record routes.

- POST /api/users: create the record at sign-up (idempotent)
- GET  /api/users/{user_id}: status, customer id and macro targets
- PUT  /api/users/{user_id}/targets: replace daily macro targets
"""
from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse

from nutritrack.api.deps import get_store
from nutritrack.features.users import service
from nutritrack.features.users.store import UserStore
from nutritrack.models.user import MacroTargets, SignUpRequest, UserResponse


router = APIRouter(prefix="/users", tags=["users"])


@router.post("", response_model=UserResponse)
def sign_up(request: SignUpRequest, store: UserStore = Depends(get_store)):
    """201 for a new record, 200 when it already existed."""
    record, created = service.sign_up(store, request.user_id, request.email)
    body = UserResponse.from_record(record).model_dump(mode="json", by_alias=True)
    return JSONResponse(status_code=201 if created else 200, content=body)


@router.get("/{user_id}", response_model=UserResponse)
def get_user(user_id: str, store: UserStore = Depends(get_store)):
    return UserResponse.from_record(service.get_user(store, user_id))


@router.put("/{user_id}/targets", response_model=UserResponse)
def update_targets(user_id: str, targets: MacroTargets, store: UserStore = Depends(get_store)):
    return UserResponse.from_record(service.update_targets(store, user_id, targets))
