from fastapi import Request, HTTPException, Depends
from typing import Dict, Any, Optional
import logging

logger = logging.getLogger(__name__)

def _bearer_token(request: Request) -> Optional[str]:
    auth_header = request.headers.get("Authorization", "")
    if auth_header.startswith("Bearer "):
        return auth_header[7:].strip() or None
    return None

def get_user_from_token(token: str) -> Dict[str, Any]:
    """
    Vérifie le jeton auprès de Supabase Auth et retourne un dict utilisateur minimal.
    - L'identité est fournie par le service d'auth; aucune session n'est gérée ici.
    """
    from marketplace.infra.supabase_client import get_supabase
    res = get_supabase().auth.get_user(token)
    user = getattr(res, "user", None)
    metadata = getattr(user, "user_metadata", None) or {}
    return {
        "id": getattr(user, "id", None),
        "email": getattr(user, "email", None),
        "role": str(metadata.get("role") or "user").lower(),
        "token": token,
    }

def get_current_user(request: Request) -> Dict[str, Any]:
    # Message générique: ne révèle pas la cause du refus
    token = _bearer_token(request)
    if not token:
        raise HTTPException(status_code=401, detail="Unauthorized")
    try:
        user = get_user_from_token(token)
    except Exception:
        logger.warning("auth.invalid_token path=%s", request.url.path)
        raise HTTPException(status_code=401, detail="Unauthorized")
    if not user.get("id"):
        raise HTTPException(status_code=401, detail="Unauthorized")
    return user

def require_user(user: Dict[str, Any] = Depends(get_current_user)) -> Dict[str, Any]:
    return user
