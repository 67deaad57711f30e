"""Confirmation-word check for destructive pipelines."""

import logging

from tfpipelines.error_handling import ConfirmationMismatch
from tfpipelines.schemas import ConfirmationToken

logger = logging.getLogger(__name__)


def validate_confirmation(token: ConfirmationToken) -> None:
    """
    Require the supplied word to equal the expected word exactly.

    Surrounding whitespace is ignored; everything else, including case, must
    match. Runs before any plan or approval gate so a typo never costs a
    reviewer's time.

    Raises:
        ConfirmationMismatch: If the words differ
    """
    supplied = token.supplied_word.strip()
    expected = token.expected_word.strip()

    if not expected:
        raise ConfirmationMismatch("Expected confirmation word is empty")

    if supplied != expected:
        logger.warning("Destroy confirmation mismatch")
        raise ConfirmationMismatch(
            f"Confirmation word mismatch: expected '{expected}' (case-sensitive)"
        )
