"""Appel best-effort d'une fonction Supabase (emails transactionnels)."""
from typing import Any, Dict, Optional
import logging

import httpx

from marketplace import config

logger = logging.getLogger(__name__)


def call_function(url: str, body: Dict[str, Any], event: str, key: Any, client: Optional[httpx.Client] = None) -> bool:
    """
    POST JSON authentifié par la clé service. Ne lève jamais: un échec est journalisé
    sous `<event>.transport_error` / `<event>.rejected` et renvoie False.
    """
    if not url:
        logger.warning("%s.disabled key=%s", event, key)
        return False
    headers = {"Content-Type": "application/json", "Authorization": f"Bearer {config.SUPABASE_SERVICE_KEY}"}
    try:
        if client is not None:
            resp = client.post(url, json=body, headers=headers)
        else:
            with httpx.Client(timeout=config.PROVIDER_TIMEOUT_SECONDS) as c:
                resp = c.post(url, json=body, headers=headers)
    except httpx.HTTPError as e:
        logger.error("%s.transport_error key=%s err=%s", event, key, e)
        return False
    if resp.is_error:
        logger.error("%s.rejected key=%s status=%s body=%s", event, key, resp.status_code, resp.text[:300])
        return False
    return True
