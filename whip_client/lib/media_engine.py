"""Interface between the WHIP session controller and the engine that actually captures, encodes and
transports the media (refer to gst_media_engine.py for the GStreamer implementation).
"""
from __future__ import annotations
import abc
from typing import Optional

# PeerConnection connection states
CONNECTION_STATE_NEW = 'new'
CONNECTION_STATE_CONNECTING = 'connecting'
CONNECTION_STATE_CONNECTED = 'connected'
CONNECTION_STATE_DISCONNECTED = 'disconnected'
CONNECTION_STATE_FAILED = 'failed'
CONNECTION_STATE_CLOSED = 'closed'

# ICE gathering states
ICE_GATHERING_STATE_NEW = 'new'
ICE_GATHERING_STATE_GATHERING = 'gathering'
ICE_GATHERING_STATE_COMPLETE = 'complete'

# ICE connection states
ICE_CONNECTION_STATE_NEW = 'new'
ICE_CONNECTION_STATE_CHECKING = 'checking'
ICE_CONNECTION_STATE_CONNECTED = 'connected'
ICE_CONNECTION_STATE_COMPLETED = 'completed'
ICE_CONNECTION_STATE_FAILED = 'failed'
ICE_CONNECTION_STATE_DISCONNECTED = 'disconnected'
ICE_CONNECTION_STATE_CLOSED = 'closed'

# DTLS transport states
DTLS_STATE_NEW = 'new'
DTLS_STATE_CLOSED = 'closed'
DTLS_STATE_FAILED = 'failed'
DTLS_STATE_CONNECTING = 'connecting'
DTLS_STATE_CONNECTED = 'connected'


class MediaEngineListener(abc.ABC):
  """Receives the media engine events.

  Callbacks may be invoked from any thread, so implementations must not assume they run on the
  thread that owns the session.
  """

  @abc.abstractmethod
  def on_negotiation_needed(self) -> None:
    ...

  @abc.abstractmethod
  def on_offer_created(self, sdp: str) -> None:
    ...

  @abc.abstractmethod
  def on_local_candidate(self, mline_index: int, candidate: str) -> None:
    ...

  @abc.abstractmethod
  def on_connection_state_changed(self, state: str) -> None:
    ...

  @abc.abstractmethod
  def on_ice_gathering_state_changed(self, state: str) -> None:
    ...

  @abc.abstractmethod
  def on_ice_connection_state_changed(self, state: str) -> None:
    ...

  @abc.abstractmethod
  def on_dtls_state_changed(self, state: str) -> None:
    ...

  @abc.abstractmethod
  def on_end_of_stream(self) -> None:
    ...

  @abc.abstractmethod
  def on_error(self, message: str) -> None:
    ...


# pylint: disable=unsubscriptable-object
class MediaEngine(abc.ABC):
  def __init__(self) -> None:
    self.listener: Optional[MediaEngineListener] = None

  def set_listener(self, listener: MediaEngineListener) -> None:
    self.listener = listener

  @abc.abstractmethod
  def set_stun_server(self, uri: Optional[str]) -> None:
    """Configures the STUN server (stun://host:port) to gather reflexive candidates with. Must be
    called before start()."""

  @abc.abstractmethod
  def add_relay_server(self, uri: str) -> bool:
    """Adds a TURN server (turn(s)://user:pass@host:port?transport=udp). Must be called before
    start().

    :return: True if the server was accepted
    """

  @abc.abstractmethod
  def start(self) -> None:
    """Builds and starts the media pipeline. Negotiation starts with an on_negotiation_needed()
    event.

    :raises MediaEngineError: if the pipeline could not be started
    """

  @abc.abstractmethod
  def stop(self) -> None:
    ...

  @abc.abstractmethod
  def create_offer(self) -> None:
    """Asks for an offer; completion is delivered with on_offer_created()."""

  @abc.abstractmethod
  def set_local_description(self, sdp: str) -> None:
    ...

  @abc.abstractmethod
  def set_remote_description(self, sdp: str) -> None:
    """:raises MediaEngineError: if the answer could not be parsed or applied"""

  @abc.abstractmethod
  def add_ice_candidate(self, mline_index: int, candidate: str) -> None:
    ...
