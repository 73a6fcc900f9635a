# orderflow/core/security.py
# Работа с JWT и определение инициатора запроса (покупатель или администратор).
from datetime import datetime, timedelta, timezone
from jose import jwt, JWTError
from fastapi import Depends, HTTPException, status
from fastapi.security import OAuth2PasswordBearer
from sqlalchemy.orm import Session
from orderflow.core.config import settings
from orderflow.core.errors import Forbidden
from orderflow.db.session import SessionLocal
from orderflow.models.user import User, RoleEnum
from orderflow.schemas.commands import Actor

# Токены выдаёт внешний сервис авторизации; здесь они только проверяются
oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/api/auth/token")

def create_access_token(subject: str, expires_delta: timedelta | None = None) -> str:
    """Создаём JWT токен с полем sub = subject (обычно id пользователя)."""
    to_encode = {"sub": str(subject)}
    if expires_delta:
        expire = datetime.now(timezone.utc) + expires_delta
    else:
        expire = datetime.now(timezone.utc) + timedelta(minutes=settings.ACCESS_TOKEN_EXPIRE_MINUTES)
    to_encode.update({"exp": expire})
    encoded_jwt = jwt.encode(to_encode, settings.SECRET_KEY, algorithm=settings.ALGORITHM)
    return encoded_jwt

def get_db():
    """Зависимость для получения сессии БД в эндпоинтах."""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()

def get_current_user(token: str = Depends(oauth2_scheme), db: Session = Depends(get_db)) -> User:
    """Возвращает текущего пользователя по JWT или бросает 401."""
    credentials_exception = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Could not validate credentials",
        headers={"WWW-Authenticate": "Bearer"},
    )
    try:
        payload = jwt.decode(token, settings.SECRET_KEY, algorithms=[settings.ALGORITHM])
        user_id: str = payload.get("sub")
        if user_id is None:
            raise credentials_exception
    except JWTError:
        raise credentials_exception
    user = db.get(User, user_id)
    if user is None:
        raise credentials_exception
    if getattr(user, "blacklisted", False):
        raise HTTPException(status_code=403, detail="User is blacklisted")
    return user

def get_current_actor(current_user: User = Depends(get_current_user)) -> Actor:
    """Инициатор действия для TransitionAuthority; права проверяет она сама."""
    return Actor(id=current_user.id, is_admin=current_user.role == RoleEnum.admin)

def require_admin(actor: Actor = Depends(get_current_actor)) -> Actor:
    """Ранний отказ для админских роутов (окончательная проверка в TransitionAuthority)."""
    if not actor.is_admin:
        raise Forbidden("Admin access required")
    return actor
