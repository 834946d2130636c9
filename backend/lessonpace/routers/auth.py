from datetime import datetime, timedelta, timezone
from typing import Optional
import logging
import uuid

from fastapi import APIRouter, HTTPException, Depends
from fastapi.security import OAuth2PasswordRequestForm, OAuth2PasswordBearer
from jose import JWTError, jwt
from passlib.context import CryptContext
from pydantic import BaseModel
from sqlalchemy.orm import Session

from ..settings import settings
from ..db import get_db
from ..errors import Forbidden
from ..models import AuthUser, AuthSession, utcnow

router = APIRouter(prefix="/auth", tags=["auth"])

logger = logging.getLogger(__name__)
logging.getLogger('passlib').setLevel(logging.ERROR)
pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")
oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/auth/token")

TEACHER = "teacher"
STUDENT = "student"


class Token(BaseModel):
	access_token: str
	token_type: str = "bearer"


class User(BaseModel):
	username: str
	role: str = STUDENT

	@property
	def is_teacher(self) -> bool:
		return self.role == TEACHER


def hash_password(password: str) -> str:
	# bcrypt only looks at the first 72 bytes
	return pwd_context.hash(password.encode("utf-8")[:72].decode("utf-8", errors="ignore"))


def ensure_seed_teacher(db: Session) -> Optional[AuthUser]:
	"""Create the configured development teacher account if it is missing."""
	username, password = settings.seed_username, settings.seed_password_plain
	if not username or not password:
		return None
	row = db.get(AuthUser, username)
	if row is None:
		row = AuthUser(username=username, password_hash=hash_password(password), role=TEACHER)
		db.add(row)
		db.commit()
		logger.info("created seed teacher %s", username)
	return row


def resolve_role(username: str, row: Optional[AuthUser]) -> str:
	if settings.configured_teacher(username):
		return TEACHER
	if row is not None and row.role == TEACHER:
		return TEACHER
	return STUDENT


def authenticate_user(db: Session, username: str, password: str) -> Optional[User]:
	if username == settings.seed_username:
		ensure_seed_teacher(db)
	row = db.get(AuthUser, username)
	if row is None or not pwd_context.verify(password, row.password_hash):
		return None
	return User(username=username, role=resolve_role(username, row))


def create_access_token(username: str, session_id: str, expires_delta: Optional[timedelta] = None) -> str:
	if expires_delta is None:
		minutes = settings.access_token_expire_minutes
		expires_delta = timedelta(minutes=minutes) if minutes > 0 else timedelta(days=30)
	claims = {"sub": username, "jti": session_id, "exp": datetime.now(timezone.utc) + expires_delta}
	return jwt.encode(claims, settings.jwt_secret_key, algorithm=settings.jwt_algorithm)


@router.post("/token", response_model=Token)
async def login(form_data: OAuth2PasswordRequestForm = Depends(), db: Session = Depends(get_db)):
	user = authenticate_user(db, form_data.username, form_data.password)
	if not user:
		raise HTTPException(status_code=401, detail="Incorrect username or password")
	# Each login gets its own server-side session row; the token carries its id
	session_id = uuid.uuid4().hex
	db.add(AuthSession(session_id=session_id, username=user.username))
	db.commit()
	return Token(access_token=create_access_token(user.username, session_id))


def _decode(token: str) -> tuple[str, str]:
	credentials_exception = HTTPException(status_code=401, detail="Could not validate credentials")
	try:
		payload = jwt.decode(token, settings.jwt_secret_key, algorithms=[settings.jwt_algorithm])
	except JWTError:
		raise credentials_exception
	username, jti = payload.get("sub"), payload.get("jti")
	if not username or not jti:
		raise credentials_exception
	return username, jti


def get_current_user(token: str = Depends(oauth2_scheme), db: Session = Depends(get_db)) -> User:
	username, jti = _decode(token)
	# Revoked or purged login sessions stop the token working
	row = db.get(AuthSession, jti)
	if row is None or row.username != username:
		raise HTTPException(status_code=401, detail="Could not validate credentials")
	row.last_activity_at = utcnow()
	db.commit()
	return User(username=username, role=resolve_role(username, db.get(AuthUser, username)))


def require_teacher(user: User = Depends(get_current_user)) -> User:
	if not user.is_teacher:
		raise Forbidden("Teacher access required")
	return user


@router.get("/me", response_model=User)
async def me(user: User = Depends(get_current_user)):
	return user


@router.post("/logout")
async def logout(token: str = Depends(oauth2_scheme), db: Session = Depends(get_db)):
	username, jti = _decode(token)
	row = db.get(AuthSession, jti)
	if row is not None and row.username == username:
		db.delete(row)
		db.commit()
	return {"ok": True}


class RegisterRequest(BaseModel):
	username: str
	password: str
	display_name: Optional[str] = None


@router.post("/register", status_code=201)
async def register(req: RegisterRequest, db: Session = Depends(get_db)):
	username = (req.username or "").strip()
	password = req.password or ""
	if not username or not password:
		raise HTTPException(status_code=400, detail="username and password are required")
	if len(username) < 3 or len(username) > 128:
		raise HTTPException(status_code=400, detail="username must be 3-128 characters")
	if db.get(AuthUser, username) is not None:
		raise HTTPException(status_code=409, detail="username already exists")
	# Accounts register as students; teachers come from configuration
	db.add(AuthUser(
		username=username,
		password_hash=hash_password(password),
		display_name=(req.display_name or "").strip() or None,
		role=STUDENT,
	))
	db.commit()
	return {"ok": True}
