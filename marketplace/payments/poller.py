"""
Vérification active du statut quand le webhook tarde.

StatusPoller interroge `check(reference)` à intervalle fixe, au plus `max_attempts` fois.
- completed / failed observé: arrêt immédiat (la réconciliation est idempotente,
  peu importe que le webhook soit arrivé avant ou après)
- budget épuisé: état still_processing ("vérifiez plus tard"), jamais de boucle infinie
- exception pendant la vérification: état error ("contactez le support")
"""
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Optional
import logging
import time

from marketplace import config

logger = logging.getLogger(__name__)


class PollState(str, Enum):
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    STILL_PROCESSING = "still_processing"
    ERROR = "error"

    @property
    def terminal(self) -> bool:
        return self is not PollState.PROCESSING


MESSAGES = {
    PollState.PROCESSING: "Waiting for payment confirmation",
    PollState.COMPLETED: "Payment successful",
    PollState.FAILED: "Payment failed, please retry",
    PollState.STILL_PROCESSING: "We couldn't verify your payment yet, please check back later",
    PollState.ERROR: "Something went wrong, please contact support",
}


@dataclass
class PollResult:
    state: PollState
    attempt: int
    max_attempts: int

    @property
    def message(self) -> str:
        return MESSAGES[self.state]

    def to_dict(self, interval: Optional[float] = None) -> dict:
        data = {
            "state": self.state.value,
            "message": self.message,
            "attempt": self.attempt,
            "max_attempts": self.max_attempts,
            "terminal": self.state.terminal,
        }
        if interval is not None and not self.state.terminal:
            data["next_poll_in"] = interval
        return data


class StatusPoller:
    def __init__(
        self,
        check: Callable[[str], str],
        max_attempts: Optional[int] = None,
        interval: Optional[float] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.check = check
        self.max_attempts = config.POLL_MAX_ATTEMPTS if max_attempts is None else max_attempts
        self.interval = config.POLL_INTERVAL_SECONDS if interval is None else interval
        self.sleep = sleep

    def poll_once(self, reference: str, attempt: int) -> PollResult:
        if attempt > self.max_attempts:
            return PollResult(PollState.STILL_PROCESSING, attempt, self.max_attempts)
        try:
            outcome = self.check(reference)
        except Exception:
            logger.exception("Erreur poll reference=%s attempt=%s", reference, attempt)
            return PollResult(PollState.ERROR, attempt, self.max_attempts)
        if outcome == "completed":
            return PollResult(PollState.COMPLETED, attempt, self.max_attempts)
        if outcome == "failed":
            return PollResult(PollState.FAILED, attempt, self.max_attempts)
        if attempt >= self.max_attempts:
            return PollResult(PollState.STILL_PROCESSING, attempt, self.max_attempts)
        return PollResult(PollState.PROCESSING, attempt, self.max_attempts)

    def run(self, reference: str) -> PollResult:
        attempt = 1
        while True:
            result = self.poll_once(reference, attempt)
            if result.state.terminal:
                logger.info("poller.done reference=%s state=%s attempts=%s", reference, result.state.value, attempt)
                return result
            self.sleep(self.interval)
            attempt += 1
