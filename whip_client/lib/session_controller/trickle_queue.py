from __future__ import annotations
import logging
import threading
from collections import deque
from typing import Deque, List, Optional, TYPE_CHECKING

from whip_client.lib import metrics
from whip_client.lib.session_controller import constants
from whip_client.lib.exceptions import TransportError

if TYPE_CHECKING:
  from whip_client.lib.session_controller.sdp_fragment import IceFragment
  from whip_client.lib.session_controller.whip_api_client import WhipApiClient

logger = logging.getLogger(__name__)

CRLF = '\r\n'


class CandidateQueue:
  """FIFO of the local candidates waiting to be sent to the WHIP endpoint.

  Pushed from the media engine's candidate callback, which may run on any thread, and drained by a
  single consumer on the event loop (the trickle timer, or the offer when not trickling).
  """

  def __init__(self) -> None:
    self._lock = threading.Lock()
    self._candidates: Deque[str] = deque()

  def push(self, mline_index: int, candidate: str) -> bool:
    """Queues :candidate if it belongs to the bundled media line and to RTP component 1.

    :param mline_index: index of the media line the candidate was gathered for
    :param candidate: the candidate attribute value, e.g. 'candidate:1 1 UDP 2015363327 ...'
    :return: True if the candidate was queued, False if it was dropped
    """
    if mline_index != constants.BUNDLE_MLINE_INDEX:
      # we're bundling, so we don't care
      return False
    parts = candidate.split(' ')
    try:
      component = int(parts[1]) if len(parts) > 1 else 0
    except ValueError:
      component = 0
    if component != constants.BUNDLE_COMPONENT_ID:
      return False
    with self._lock:
      self._candidates.append(candidate)
    return True

  def push_end_of_candidates(self) -> None:
    with self._lock:
      self._candidates.append(constants.END_OF_CANDIDATES)

  def drain(self) -> List[str]:
    """Removes and returns everything queued so far, in the order it was pushed."""
    with self._lock:
      candidates = list(self._candidates)
      self._candidates.clear()
    return candidates

  def __len__(self) -> int:
    with self._lock:
      return len(self._candidates)


# pylint: disable=unsubscriptable-object
def build_trickle_fragment(ice_fragment: IceFragment, candidates: List[str],
                           media_kind: str = 'audio') -> str:
  """Builds the application/trickle-ice-sdpfrag body for a PATCH request: the ICE credentials, a
  fake m-line, the mid of the bundled media section (if known) and one attribute per candidate.

  :param ice_fragment: credentials and mid extracted from the offer
  :param candidates: candidate attribute values, possibly ending with constants.END_OF_CANDIDATES
  :param media_kind: 'audio' or 'video', used for the fake m-line
  :return: the SDP fragment
  """
  fragment = []
  # credentials missing from the offer are left out rather than sent empty
  if ice_fragment.ice_ufrag is not None:
    fragment.append(f'a=ice-ufrag:{ice_fragment.ice_ufrag}{CRLF}')
  if ice_fragment.ice_pwd is not None:
    fragment.append(f'a=ice-pwd:{ice_fragment.ice_pwd}{CRLF}')
  fragment.append(f'm={media_kind} 9 RTP/AVP 0{CRLF}')
  if ice_fragment.first_mid:
    fragment.append(f'a=mid:{ice_fragment.first_mid}{CRLF}')
  for candidate in candidates:
    fragment.append(f'a={candidate}{CRLF}')
  return ''.join(fragment)


async def flush_candidates(candidate_queue: CandidateQueue, api_client: WhipApiClient,
                           resource_url: Optional[str], ice_fragment: IceFragment,
                           media_kind: str = 'audio') -> bool:
  """Sends all the queued candidates to the WHIP resource in a single PATCH request.

  Trickling is best effort: failures are logged but never end the session.

  :param candidate_queue: the queue of local candidates
  :param api_client: WHIP API client
  :param resource_url: URL of the WHIP resource
  :param ice_fragment: credentials and mid extracted from the offer
  :param media_kind: 'audio' or 'video', used for the fake m-line
  :return: False if the batch included the end of candidates and flushing should stop, else True
  """
  if len(candidate_queue) == 0:
    return True

  candidates = candidate_queue.drain()
  for candidate in candidates:
    logger.debug(f'Sending candidate: {candidate}')
  is_last_batch = constants.END_OF_CANDIDATES in candidates

  if resource_url is None:
    logger.warning("No resource url, can't trickle...")
    return not is_last_batch

  fragment = build_trickle_fragment(ice_fragment, candidates, media_kind)
  try:
    resp = await api_client.send(
        constants.HTTP_PATCH,
        resource_url,
        fragment,
        constants.CONTENT_TYPE_TRICKLE_ICE_SDPFRAG,
        verbose_logging=False)
  except TransportError:
    logger.exception('Encountered exception while trickling candidates')
    metrics.report_trickle_error()
  else:
    if resp.status_code not in constants.TRICKLE_SUCCESS_STATUS_CODES:
      logger.warning(f' [trickle] {resp.status_code} {resp.reason_phrase}')
      metrics.report_trickle_error(status_code=str(resp.status_code))

  # if the candidates we sent included an end-of-candidates, we're done
  return not is_last_batch
