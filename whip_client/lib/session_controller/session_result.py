from dataclasses import dataclass
from typing import Optional


@dataclass(frozen=True)
# pylint: disable=unsubscriptable-object
class WhipSessionResult:
  """Immutable representation of the result of a WHIP session once it was torn down. Includes
  metadata about the session and its success/failure.
  """
  # The reason the session was torn down, e.g. 'Shutting down' or 'ICE failed'
  reason: str

  # State of the session when it was torn down (one of constants.WHIP_SESSION_STATES)
  final_state: str

  # URL of the WHIP resource, or None if the offer was never accepted or the endpoint did not
  #  return a Location header
  resource_url: Optional[str] = None

  # Boolean value indicating whether the answer was received and handed to the media engine
  did_session_start: bool = False

  # Boolean value indicating whether the WHIP resource was deleted:
  # True if the DELETE request returned a 200
  # False if the DELETE request failed or returned another status code
  # None if there was no resource to delete
  did_teardown_succeed: Optional[bool] = None

  # Boolean value indicating whether the session ended in an error state
  is_error: bool = False
