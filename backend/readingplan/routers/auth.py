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
from ..models import Parent, AuthSession

router = APIRouter(prefix="/auth", tags=["auth"])

logger = logging.getLogger(__name__)
logging.getLogger('passlib').setLevel(logging.ERROR)
pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")
oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/auth/token")


class Token(BaseModel):
	access_token: str
	token_type: str = "bearer"


class ParentOut(BaseModel):
	id: int
	email: str
	name: str


def _bcrypt_safe(password: str) -> str:
	# bcrypt only looks at the first 72 bytes
	password_bytes = password.encode('utf-8')
	if len(password_bytes) > 72:
		password_bytes = password_bytes[:72]
	return password_bytes.decode('utf-8', errors='ignore')


def hash_password(password: str) -> str:
	return pwd_context.hash(_bcrypt_safe(password))


def verify_password(plain_password: str, hashed_password: str) -> bool:
	return pwd_context.verify(_bcrypt_safe(plain_password), hashed_password)


def authenticate_parent(db: Session, email: str, password: str) -> Optional[Parent]:
	parent = db.query(Parent).filter(Parent.email == email.strip().lower()).first()
	if parent and verify_password(password, parent.password_hash):
		return parent
	return None


def _resolve_expiry(expires_delta: Optional[timedelta]) -> datetime:
	delta = expires_delta
	if delta is None:
		minutes = settings.access_token_expire_minutes
		delta = timedelta(minutes=minutes) if minutes > 0 else timedelta(days=30)
	return datetime.now(timezone.utc) + delta


def create_access_token(data: dict, expires_delta: Optional[timedelta] = None) -> str:
	to_encode = data.copy()
	to_encode.update({"exp": _resolve_expiry(expires_delta)})
	return jwt.encode(to_encode, settings.jwt_secret_key, algorithm=settings.jwt_algorithm)


@router.post("/token", response_model=Token)
async def login(form_data: OAuth2PasswordRequestForm = Depends(), db: Session = Depends(get_db)):
	parent = authenticate_parent(db, form_data.username, form_data.password)
	if not parent:
		raise HTTPException(status_code=401, detail="Incorrect email or password")
	# The token's jti doubles as the server-side session id
	session_id = uuid.uuid4().hex
	access_token = create_access_token({"sub": str(parent.id), "jti": session_id})
	db.add(AuthSession(session_id=session_id, parent_id=parent.id))
	db.commit()
	return Token(access_token=access_token)


def get_current_parent(token: str = Depends(oauth2_scheme), db: Session = Depends(get_db)) -> Parent:
	credentials_exception = HTTPException(status_code=401, detail="Could not validate credentials")
	try:
		payload = jwt.decode(token, settings.jwt_secret_key, algorithms=[settings.jwt_algorithm])
		subject: str | None = payload.get("sub")
		jti: str | None = payload.get("jti")
		if subject is None or jti is None:
			raise credentials_exception
		parent_id = int(subject)
	except (JWTError, ValueError):
		raise credentials_exception
	# Sessions can be revoked server-side by deleting the row
	row = db.get(AuthSession, jti)
	if not row or row.parent_id != parent_id:
		raise credentials_exception
	parent = db.get(Parent, parent_id)
	if parent is None:
		raise credentials_exception
	row.last_activity_at = datetime.utcnow()
	db.commit()
	return parent


@router.get("/me", response_model=ParentOut)
async def me(parent: Parent = Depends(get_current_parent)):
	return ParentOut(id=parent.id, email=parent.email, name=parent.name)


class RegisterRequest(BaseModel):
	email: str
	name: str
	password: str


@router.post("/register", status_code=201, response_model=ParentOut)
async def register(req: RegisterRequest, db: Session = Depends(get_db)):
	email = (req.email or "").strip().lower()
	name = (req.name or "").strip()
	password = req.password or ""
	if not email or "@" not in email:
		raise HTTPException(status_code=400, detail="a valid email is required")
	if not name:
		raise HTTPException(status_code=400, detail="name is required")
	if len(password) < 8:
		raise HTTPException(status_code=400, detail="password must be at least 8 characters")
	existing = db.query(Parent).filter(Parent.email == email).first()
	if existing:
		raise HTTPException(status_code=409, detail="email already registered")
	parent = Parent(email=email, name=name, password_hash=hash_password(password))
	db.add(parent)
	db.commit()
	logger.info("Registered parent %s", parent.id)
	return ParentOut(id=parent.id, email=parent.email, name=parent.name)
