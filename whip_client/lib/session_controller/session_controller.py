from __future__ import annotations
import asyncio
import logging
import os
from collections.abc import Callable
from dataclasses import dataclass
from typing import Optional, TYPE_CHECKING

import httpx

from whip_client.lib import metrics, media_engine
from whip_client.lib.atomics import AtomicCounter, AtomicFlag
from whip_client.lib.media_engine import MediaEngine, MediaEngineListener
from whip_client.lib.session_controller import constants, sdp_fragment, link_discovery
from whip_client.lib.session_controller.session_result import WhipSessionResult
from whip_client.lib.session_controller.session_state_manager import SessionStateManager
from whip_client.lib.session_controller.trickle_queue import CandidateQueue, flush_candidates
from whip_client.lib.session_controller.whip_api_client import (
  WhipApiClient, resolve_location)
from whip_client.lib.exceptions import (
  MediaEngineError, ProtocolError, SdpParseError, TransportError)

if TYPE_CHECKING:
  from whip_client.config import WhipConfig

logger = logging.getLogger(__name__)

# called with the exit status when too many termination signals are received
ForceExitFn = Callable[[int], None]


# events handled by the dispatch loop, in the order they are posted
@dataclass(frozen=True)
class NegotiationNeeded:
  pass


@dataclass(frozen=True)
class OfferCreated:
  sdp: str


@dataclass(frozen=True)
class ConnectionStateChanged:
  state: str


@dataclass(frozen=True)
class IceGatheringStateChanged:
  state: str


@dataclass(frozen=True)
class IceConnectionStateChanged:
  state: str


@dataclass(frozen=True)
class DtlsStateChanged:
  state: str


@dataclass(frozen=True)
class EndOfStream:
  pass


@dataclass(frozen=True)
class MediaEngineFailure:
  message: str


@dataclass(frozen=True)
class DisconnectRequested:
  reason: str


@dataclass(frozen=True)
class TrickleTimerFired:
  pass


def check_offer_response(resp: httpx.Response) -> str:
  """Checks the response of the WHIP endpoint to the offer and returns the SDP answer.

  :param resp: response to the POST request
  :return: the answer text
  :raises ProtocolError: if the status code is not 201 or the content type is not application/sdp
  :raises SdpParseError: if the body is not an SDP (it must start with 'v=0' and a CRLF)
  """
  if resp.status_code != constants.OFFER_SUCCESS_STATUS_CODE:
    # didn't get the success we were expecting
    raise ProtocolError(f'[{resp.status_code}] {resp.reason_phrase}', resp.status_code)

  content_type = resp.headers.get(constants.CONTENT_TYPE_HEADER_NAME)
  if content_type is None or (
      content_type.split(';')[0].strip().lower() != constants.CONTENT_TYPE_SDP):
    raise ProtocolError(f"Unexpected content-type '{content_type}'", resp.status_code)

  answer = resp.text
  if not answer.startswith('v=0\r\n'):
    raise SdpParseError('Missing or invalid SDP answer')
  return answer


# pylint: disable=unsubscriptable-object,too-many-instance-attributes
class WhipSessionController(MediaEngineListener):
  """Drives a single WHIP session: optional STUN/TURN discovery, the offer/answer exchange with the
  WHIP endpoint, candidate trickling and the final teardown.

  Media engine callbacks can come from any thread. They are posted to a queue that a single
  dispatch task drains on the event loop, so each event is completely handled before the next one.
  The only exception is on_local_candidate(), which just pushes to the (thread-safe) candidate
  queue.
  """

  def __init__(self, whip_config: WhipConfig, engine: MediaEngine,
               api_client: Optional[WhipApiClient] = None,
               force_exit_fn: ForceExitFn = os._exit,
               trickle_interval_secs: float = constants.TRICKLE_FLUSH_INTERVAL_SECS) -> None:
    """WHIP session controller constructor.

    :param whip_config: validated client configuration
    :param engine: media engine producing the offer and the candidates
    :param api_client: WHIP API client; by default one is created for the configured endpoint
    :param force_exit_fn: function called to exit the process when termination signals keep coming
    :param trickle_interval_secs: interval between two flushes of the trickle queue
    """
    self.config = whip_config
    self.engine = engine
    self.api_client = api_client or WhipApiClient(whip_config.server_url, whip_config.token)
    self.force_exit_fn = force_exit_fn
    self.trickle_interval_secs = trickle_interval_secs

    self.state_manager = SessionStateManager()
    self.candidate_queue = CandidateQueue()
    self.resource_url: Optional[str] = None
    self.ice_fragment: Optional[sdp_fragment.IceFragment] = None
    self.ice_servers = link_discovery.IceServers()
    self.result: Optional[WhipSessionResult] = None

    self.gathering_done = False
    self.pending_offer: Optional[str] = None
    self.offer_sent = False
    self.did_session_start = False

    self.disconnected = AtomicFlag()
    self.stop_count = AtomicCounter()

    self.loop: Optional[asyncio.AbstractEventLoop] = None
    self.events: Optional[asyncio.Queue] = None
    self.stopped: Optional[asyncio.Event] = None
    self.dispatch_task: Optional[asyncio.Task] = None
    self.trickle_task: Optional[asyncio.Task] = None

  async def run(self) -> WhipSessionResult:
    """Runs the session until it is torn down.

    :return: the result of the session
    """
    self.loop = asyncio.get_running_loop()
    self.events = asyncio.Queue()
    self.stopped = asyncio.Event()

    self.state_manager.set_state(constants.WHIP_STATE_CONNECTING)
    if self.config.follow_link:
      # auto-configure STUN/TURN servers before the media engine is created
      self.ice_servers = await link_discovery.discover_ice_servers(self.api_client)
    self.state_manager.set_state(constants.WHIP_STATE_CONNECTED)
    self.configure_ice_servers()

    self.dispatch_task = asyncio.create_task(self.dispatch_events(), name='whip_dispatch_task')
    try:
      self.engine.set_listener(self)
      try:
        self.engine.start()
      except MediaEngineError as err:
        logger.error(f'Failed to start the media engine: {err}')
        self.state_manager.set_state(constants.WHIP_STATE_ERROR)
        metrics.report_media_engine_error(err.layer or 'pipeline')
        await self.disconnect(constants.DISCONNECT_REASON_MEDIA_ENGINE_ERROR)
      else:
        self.state_manager.set_state(constants.WHIP_STATE_PUBLISHING)
      await self.stopped.wait()
    finally:
      await self.cancel_task(self.trickle_task)
      await self.cancel_task(self.dispatch_task)
      self.engine.stop()
      logger.info('Media engine stopped')
    return self.result

  def configure_ice_servers(self) -> None:
    """Hands the STUN/TURN servers to the media engine, preferring those found via Link headers and
    falling back to the explicitly configured ones."""
    stun_server = self.ice_servers.stun_server or self.config.stun_server
    turn_servers = self.ice_servers.turn_servers or self.config.turn_servers
    if stun_server is not None:
      self.engine.set_stun_server(stun_server)
    for turn_server in turn_servers:
      if not self.engine.add_relay_server(turn_server):
        logger.warning(f'Error adding TURN server ({turn_server})')

  async def dispatch_events(self) -> None:
    while True:
      event = await self.events.get()
      if self.disconnected.is_set():
        logger.debug(f'Session torn down, ignoring {event}')
        continue
      try:
        await self.handle_event(event)
      except asyncio.CancelledError:
        raise
      except Exception:  # pylint: disable=broad-except
        logger.exception(f'Encountered exception while handling {event}')
        self.state_manager.set_state(constants.WHIP_STATE_ERROR)
        await self.disconnect(constants.DISCONNECT_REASON_MEDIA_ENGINE_ERROR)

  # pylint: disable=too-many-branches
  async def handle_event(self, event: object) -> None:
    if isinstance(event, TrickleTimerFired):
      await self.send_candidates()
    elif isinstance(event, NegotiationNeeded):
      self.negotiation_needed()
    elif isinstance(event, OfferCreated):
      await self.offer_available(event.sdp)
    elif isinstance(event, IceGatheringStateChanged):
      await self.ice_gathering_state_changed(event.state)
    elif isinstance(event, ConnectionStateChanged):
      await self.connection_state_changed(event.state)
    elif isinstance(event, IceConnectionStateChanged):
      await self.ice_connection_state_changed(event.state)
    elif isinstance(event, DtlsStateChanged):
      await self.dtls_state_changed(event.state)
    elif isinstance(event, EndOfStream):
      await self.disconnect(constants.DISCONNECT_REASON_EOS)
    elif isinstance(event, MediaEngineFailure):
      logger.error(f'Media engine error: {event.message}')
      self.state_manager.set_state(constants.WHIP_STATE_ERROR)
      metrics.report_media_engine_error('pipeline')
      await self.disconnect(constants.DISCONNECT_REASON_MEDIA_ENGINE_ERROR)
    elif isinstance(event, DisconnectRequested):
      await self.disconnect(event.reason)
    else:
      logger.warning(f'Ignoring unknown event {event}')

  def negotiation_needed(self) -> None:
    if self.resource_url is not None or self.offer_sent:
      # we've sent an offer already, is something wrong?
      logger.warning('Media engine trying to create a new offer, but we don\'t support '
                     'renegotiations yet...')
      return
    logger.info('Creating offer')
    self.state_manager.set_state(constants.WHIP_STATE_OFFER_PREPARED)
    self.engine.create_offer()

  async def offer_available(self, offer: str) -> None:
    logger.info('Offer created')
    if self.state_manager.get_state() != constants.WHIP_STATE_OFFER_PREPARED:
      logger.warning(f'Ignoring offer created in state {self.state_manager.get_state()}')
      return
    logger.info('Setting local description')
    self.engine.set_local_description(offer)

    # when not trickling, wait for gathering to be completed, and then add all candidates to the
    #  offer before sending it
    if self.config.trickle or self.gathering_done:
      await self.connect(offer)
    else:
      self.pending_offer = offer

  async def ice_gathering_state_changed(self, state: str) -> None:
    if state == media_engine.ICE_GATHERING_STATE_GATHERING:
      logger.info('ICE gathering started...')
    elif state == media_engine.ICE_GATHERING_STATE_COMPLETE:
      logger.info('ICE gathering completed')
      # send an a=end-of-candidates trickle (or add it to the offer, if not trickling)
      self.candidate_queue.push_end_of_candidates()
      self.gathering_done = True
      if not self.config.trickle and self.pending_offer is not None:
        offer, self.pending_offer = self.pending_offer, None
        await self.connect(offer)

  async def connection_state_changed(self, state: str) -> None:
    if state == media_engine.CONNECTION_STATE_CONNECTING:
      logger.info('PeerConnection connecting...')
    elif state == media_engine.CONNECTION_STATE_CONNECTED:
      logger.info('PeerConnection connected')
    elif state == media_engine.CONNECTION_STATE_FAILED:
      logger.error('PeerConnection failed')
      await self.fail(constants.DISCONNECT_REASON_PEER_CONNECTION_FAILED, 'peer_connection')

  async def ice_connection_state_changed(self, state: str) -> None:
    if state == media_engine.ICE_CONNECTION_STATE_CHECKING:
      logger.info('ICE connecting...')
    elif state == media_engine.ICE_CONNECTION_STATE_CONNECTED:
      logger.info('ICE connected')
    elif state == media_engine.ICE_CONNECTION_STATE_COMPLETED:
      logger.info('ICE completed')
    elif state == media_engine.ICE_CONNECTION_STATE_FAILED:
      logger.error('ICE failed')
      await self.fail(constants.DISCONNECT_REASON_ICE_FAILED, 'ice')

  async def dtls_state_changed(self, state: str) -> None:
    if state == media_engine.DTLS_STATE_CLOSED:
      logger.info('DTLS connection closed')
      await self.disconnect(constants.DISCONNECT_REASON_PEER_CONNECTION_CLOSED)
    elif state == media_engine.DTLS_STATE_FAILED:
      logger.error('DTLS failed')
      await self.fail(constants.DISCONNECT_REASON_DTLS_FAILED, 'dtls')
    elif state == media_engine.DTLS_STATE_CONNECTING:
      logger.info('DTLS connecting...')
    elif state == media_engine.DTLS_STATE_CONNECTED:
      logger.info('DTLS connected')

  async def fail(self, reason: str, layer: str) -> None:
    self.state_manager.set_state(constants.WHIP_STATE_ERROR)
    metrics.report_media_engine_error(layer)
    await self.disconnect(reason)

  # pylint: disable=too-many-return-statements
  async def connect(self, offer: str) -> None:
    """Sends the offer to the WHIP endpoint, processes the answer and hands it to the media engine.

    Any failure here is fatal and tears the session down.

    :param offer: the local offer, as generated by the media engine
    :return: None
    """
    if self.offer_sent:
      logger.warning('Offer already sent, ignoring')
      return
    self.offer_sent = True

    if not self.config.trickle:
      # add our candidates to the SDP
      candidates = self.candidate_queue.drain()
      for candidate in candidates:
        logger.debug(f'Adding candidate to SDP: {candidate}')
      offer = sdp_fragment.append_candidates_to_media_sections(offer, candidates)
    offer = sdp_fragment.rewrite_sendrecv_to_sendonly(offer)
    logger.info(f'Sending SDP offer ({len(offer)} bytes)')
    logger.debug(offer)

    # partially parse the SDP to find ICE credentials and the mid for the bundle m-line
    try:
      self.ice_fragment = sdp_fragment.extract_ice_fragment(offer)
    except SdpParseError:
      logger.exception('Failed to parse the SDP offer')
      self.state_manager.set_state(constants.WHIP_STATE_ERROR)
      metrics.report_sdp_error()
      await self.disconnect(constants.DISCONNECT_REASON_SDP_ERROR)
      return
    if self.ice_fragment.ice_ufrag is None or self.ice_fragment.ice_pwd is None:
      logger.warning('No ICE credentials in the SDP offer, trickled candidates may be rejected')

    with metrics.timed('offer_answer_duration_secs'):
      try:
        resp = await self.api_client.send(
            constants.HTTP_POST,
            self.config.server_url,
            offer,
            constants.CONTENT_TYPE_SDP)
      except TransportError:
        logger.exception('Failed to send the SDP offer')
        self.state_manager.set_state(constants.WHIP_STATE_CONNECTION_ERROR)
        metrics.report_offer_rejected()
        await self.disconnect(constants.DISCONNECT_REASON_HTTP_ERROR)
        return
    metrics.report_offer_sent()

    try:
      answer = check_offer_response(resp)
    except ProtocolError as err:
      logger.error(f'Offer rejected: {err}')
      self.state_manager.set_state(constants.WHIP_STATE_API_ERROR)
      metrics.report_offer_rejected(status_code=str(err.status_code))
      await self.disconnect(constants.DISCONNECT_REASON_HTTP_ERROR)
      return
    except SdpParseError as err:
      logger.error(f'{err}')
      self.state_manager.set_state(constants.WHIP_STATE_ERROR)
      metrics.report_sdp_error()
      await self.disconnect(constants.DISCONNECT_REASON_SDP_ERROR)
      return

    # check if there's an ETag we should send in upcoming requests
    etag = resp.headers.get(constants.ETAG_HEADER_NAME)
    if etag is None:
      logger.warning("No ETag header, won't be able to set If-Match when trickling")
    else:
      self.api_client.set_entity_tag(etag)

    # parse the location header to populate the resource url
    location = resp.headers.get(constants.LOCATION_HEADER_NAME)
    if location is None:
      logger.warning("No Location header, won't be able to trickle or teardown the session")
    else:
      self.resource_url = resolve_location(self.config.server_url, location)
      logger.info(f'Resource URL: {self.resource_url}')

    if self.config.trickle:
      # now that we know the resource url, send the queued candidates on a timer: most candidates
      #  will be local, so rather than sending a PATCH for each of them as soon as they're known,
      #  they're grouped every ~100ms
      self.trickle_task = asyncio.create_task(self.trickle_timer(), name='whip_trickle_task')

    logger.info(f'Received SDP answer ({len(answer)} bytes)')
    logger.debug(answer)

    # if there are candidates in the answer, fake trickles for them
    for candidate in sdp_fragment.find_first_mline_candidates(answer):
      logger.debug(f'  -- Found candidate: {candidate}')
      self.engine.add_ice_candidate(constants.BUNDLE_MLINE_INDEX, candidate)

    logger.info('Setting remote description')
    try:
      self.engine.set_remote_description(answer)
    except MediaEngineError:
      logger.exception('Failed to set the remote description')
      self.state_manager.set_state(constants.WHIP_STATE_ERROR)
      metrics.report_sdp_error()
      await self.disconnect(constants.DISCONNECT_REASON_SDP_ERROR)
      return

    self.state_manager.set_state(constants.WHIP_STATE_STARTED)
    self.did_session_start = True
    metrics.report_session_started()

  async def trickle_timer(self) -> None:
    while True:
      await asyncio.sleep(self.trickle_interval_secs)
      self.events.put_nowait(TrickleTimerFired())

  async def send_candidates(self) -> None:
    keep_going = await flush_candidates(
        self.candidate_queue,
        self.api_client,
        self.resource_url,
        self.ice_fragment,
        self.config.media_kind)
    if not keep_going:
      logger.info('End of candidates sent, no more trickling')
      await self.cancel_task(self.trickle_task)
      self.trickle_task = None

  async def disconnect(self, reason: str) -> Optional[WhipSessionResult]:
    """Tears the session down: deletes the WHIP resource, if any, and stops the session.

    Only the first call does anything, whatever triggered it (error, signal, EOS); later calls
    return immediately.

    :param reason: why the session is being torn down
    :return: the session result, or None if a teardown is already in progress
    """
    if not self.disconnected.compare_and_set(False, True):
      return self.result
    logger.info(f'Disconnecting from server ({reason})')
    await self.cancel_task(self.trickle_task)
    self.trickle_task = None

    did_teardown_succeed = None
    if self.resource_url is not None:
      did_teardown_succeed = False
      try:
        resp = await self.api_client.send(constants.HTTP_DELETE, self.resource_url)
      except TransportError:
        logger.exception('Encountered exception while deleting the WHIP resource')
        metrics.report_teardown_error()
      else:
        if resp.status_code != constants.TEARDOWN_SUCCESS_STATUS_CODE:
          logger.warning(f' [{resp.status_code}] {resp.reason_phrase}')
          metrics.report_teardown_error(status_code=str(resp.status_code))
        else:
          did_teardown_succeed = True

    self.result = WhipSessionResult(
        reason=reason,
        final_state=self.state_manager.get_state(),
        resource_url=self.resource_url,
        did_session_start=self.did_session_start,
        did_teardown_succeed=did_teardown_succeed,
        is_error=self.state_manager.is_error())
    metrics.report_session_completed()
    if self.stopped is not None:
      self.stopped.set()
    return self.result

  def on_termination_signal(self) -> None:
    """Handles SIGINT/SIGTERM: the first signal tears the session down gracefully, the next ones
    are tolerated, and once too many were received the process exits without any teardown."""
    stop_count = self.stop_count.increment()
    if stop_count == 1:
      logger.info('Stopping the WHIP client...')
      self.post(DisconnectRequested(constants.DISCONNECT_REASON_SHUTDOWN))
    elif stop_count <= constants.MAX_GRACEFUL_TERMINATION_SIGNALS:
      logger.warning(f'Still stopping the WHIP client (signal {stop_count} of '
                     f'{constants.MAX_GRACEFUL_TERMINATION_SIGNALS}), next one will force exit')
    else:
      logger.error('Too many termination signals, exiting without tearing down the session')
      metrics.report_forced_exit()
      self.force_exit_fn(1)

  def post(self, event: object) -> None:
    """Posts an event for the dispatch loop. Safe to call from any thread."""
    if self.loop is None or self.loop.is_closed():
      logger.warning(f'Event loop not running, dropping {event}')
      return
    self.loop.call_soon_threadsafe(self.events.put_nowait, event)

  @staticmethod
  async def cancel_task(task: Optional[asyncio.Task]) -> None:
    if task is None or task.done() or task is asyncio.current_task():
      return
    task.cancel()
    try:
      await task
    except asyncio.CancelledError:
      logger.debug(f'Task {task.get_name()} cancelled')

  # MediaEngineListener callbacks, invoked from media engine threads
  def on_negotiation_needed(self) -> None:
    self.post(NegotiationNeeded())

  def on_offer_created(self, sdp: str) -> None:
    self.post(OfferCreated(sdp))

  def on_local_candidate(self, mline_index: int, candidate: str) -> None:
    if self.disconnected.is_set() or self.stop_count.get() > 0:
      return
    if not self.state_manager.has_offer():
      self.post(DisconnectRequested(constants.DISCONNECT_REASON_NOT_IN_PEER_CONNECTION))
      return
    # keep track of the candidate, it's sent later when the trickle timer fires
    self.candidate_queue.push(mline_index, candidate)

  def on_connection_state_changed(self, state: str) -> None:
    self.post(ConnectionStateChanged(state))

  def on_ice_gathering_state_changed(self, state: str) -> None:
    self.post(IceGatheringStateChanged(state))

  def on_ice_connection_state_changed(self, state: str) -> None:
    self.post(IceConnectionStateChanged(state))

  def on_dtls_state_changed(self, state: str) -> None:
    self.post(DtlsStateChanged(state))

  def on_end_of_stream(self) -> None:
    self.post(EndOfStream())

  def on_error(self, message: str) -> None:
    self.post(MediaEngineFailure(message))
