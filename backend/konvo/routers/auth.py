from typing import Optional

from fastapi import APIRouter, HTTPException, Depends
from fastapi.security import OAuth2PasswordBearer
from jose import JWTError, jwt
from pydantic import BaseModel

from ..settings import settings

router = APIRouter(prefix="/auth", tags=["auth"])

# Tokens are issued by the external identity service; this backend only verifies them
oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/auth/token", auto_error=False)


class User(BaseModel):
	user_id: str
	role: str = "student"


def _decode(token: str) -> User:
	credentials_exception = HTTPException(status_code=401, detail="Could not validate credentials")
	try:
		payload = jwt.decode(token, settings.jwt_secret_key, algorithms=[settings.jwt_algorithm])
		user_id: str | None = payload.get("sub")
		if user_id is None:
			raise credentials_exception
	except JWTError:
		raise credentials_exception
	return User(user_id=user_id, role=str(payload.get("role") or "student"))


def get_optional_user(token: Optional[str] = Depends(oauth2_scheme)) -> Optional[User]:
	"""Authenticated respondent, or None for public (anonymous) respondents."""
	if not token:
		return None
	return _decode(token)


def get_current_user(user: Optional[User] = Depends(get_optional_user)) -> User:
	if user is None:
		raise HTTPException(status_code=401, detail="Not authenticated")
	return user


def require_teacher(user: User = Depends(get_current_user)) -> User:
	if user.role != "teacher":
		raise HTTPException(status_code=403, detail="Teacher access required")
	return user


@router.get("/me", response_model=User)
async def me(user: User = Depends(get_current_user)):
	return user
