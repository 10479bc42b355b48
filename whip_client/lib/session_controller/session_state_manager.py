import logging

from whip_client.lib.session_controller import constants

logger = logging.getLogger(__name__)


class SessionStateManager:
  def __init__(self) -> None:
    self.state = constants.WHIP_STATE_DISCONNECTED

  def set_state(self, state: str) -> bool:
    """Sets the session state if valid.

    States only move forward (see constants.WHIP_SESSION_STATES), except for the error states,
    which can be entered from any non-error state and are never left.

    :param state: one of the WHIP session states defined in constants.py
    :return: boolean indicating whether the state was set or not
    """
    if state not in constants.WHIP_SESSION_STATES:
      logger.error(f'WHIP session state {state} unrecognized')
      return False
    if self.is_error():
      logger.error(f'Ignoring WHIP session state transition from error state {self.state} to '
                   f'{state}')
      return False
    if (
        state not in constants.WHIP_ERROR_STATES and
        constants.WHIP_SESSION_STATES.index(state) <
        constants.WHIP_SESSION_STATES.index(self.state)
    ):
      logger.error(f'Ignoring backwards WHIP session state transition from {self.state} to {state}')
      return False
    logger.info(f'WHIP session state transition from {self.state} to {state}')
    self.state = state
    return True

  def get_state(self) -> str:
    return self.state

  def is_error(self) -> bool:
    """Returns boolean value indicating whether the session ended up in one of the error states."""
    return self.state in constants.WHIP_ERROR_STATES

  def has_offer(self) -> bool:
    """Returns boolean value indicating whether an offer was prepared already, i.e. whether the
    media engine is in a PeerConnection we can trickle candidates for."""
    return (
        constants.WHIP_SESSION_STATES.index(self.state) >=
        constants.WHIP_SESSION_STATES.index(constants.WHIP_STATE_OFFER_PREPARED))
