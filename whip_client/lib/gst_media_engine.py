"""GStreamer implementation of the media engine, built around a webrtcbin element.

Requires the PyGObject bindings and the GStreamer WebRTC plugins (install the `gstreamer` extra).
webrtcbin signals are emitted on GStreamer streaming threads, and the pipeline bus is watched from a
GLib main loop running on a dedicated thread: listener callbacks can come from either.
"""
from __future__ import annotations
import logging
import threading
from typing import List, Optional, TYPE_CHECKING

import gi

gi.require_version('Gst', '1.0')
gi.require_version('GstWebRTC', '1.0')
gi.require_version('GstSdp', '1.0')
from gi.repository import GLib, Gst, GstSdp, GstWebRTC  # pylint: disable=wrong-import-position

from whip_client.lib import media_engine  # pylint: disable=wrong-import-position
from whip_client.lib.exceptions import MediaEngineError  # pylint: disable=wrong-import-position

if TYPE_CHECKING:
  from whip_client.config import WhipConfig

logger = logging.getLogger(__name__)

# since the pipeline is dynamic, there may be more requirements
REQUIRED_PLUGINS = [
    'opus',
    'vpx',
    'nice',
    'webrtc',
    'dtls',
    'srtp',
    'rtpmanager',
    'videotestsrc',
    'audiotestsrc'
]

WEBRTCBIN_NAME = 'sendonly'
# webrtcbin bundle-policy values
BUNDLE_POLICY_NONE = 0
BUNDLE_POLICY_MAX_BUNDLE = 3

# webrtcbin/dtlsdec enum values -> media engine states
CONNECTION_STATES = {
    0: media_engine.CONNECTION_STATE_NEW,
    1: media_engine.CONNECTION_STATE_CONNECTING,
    2: media_engine.CONNECTION_STATE_CONNECTED,
    3: media_engine.CONNECTION_STATE_DISCONNECTED,
    4: media_engine.CONNECTION_STATE_FAILED,
    5: media_engine.CONNECTION_STATE_CLOSED
}
ICE_GATHERING_STATES = {
    0: media_engine.ICE_GATHERING_STATE_NEW,
    1: media_engine.ICE_GATHERING_STATE_GATHERING,
    2: media_engine.ICE_GATHERING_STATE_COMPLETE
}
ICE_CONNECTION_STATES = {
    0: media_engine.ICE_CONNECTION_STATE_NEW,
    1: media_engine.ICE_CONNECTION_STATE_CHECKING,
    2: media_engine.ICE_CONNECTION_STATE_CONNECTED,
    3: media_engine.ICE_CONNECTION_STATE_COMPLETED,
    4: media_engine.ICE_CONNECTION_STATE_FAILED,
    5: media_engine.ICE_CONNECTION_STATE_DISCONNECTED,
    6: media_engine.ICE_CONNECTION_STATE_CLOSED
}
DTLS_STATES = {
    0: media_engine.DTLS_STATE_NEW,
    1: media_engine.DTLS_STATE_CLOSED,
    2: media_engine.DTLS_STATE_FAILED,
    3: media_engine.DTLS_STATE_CONNECTING,
    4: media_engine.DTLS_STATE_CONNECTED
}


def check_plugins() -> List[str]:
  """Returns the names of the required GStreamer plugins that are not installed."""
  registry = Gst.Registry.get()
  missing = []
  for name in REQUIRED_PLUGINS:
    if registry.find_plugin(name) is None:
      logger.critical(f"Required gstreamer plugin '{name}' not found")
      missing.append(name)
  return missing


def build_pipeline_description(audio_pipeline: Optional[str], video_pipeline: Optional[str],
                               stun_server: Optional[str] = None,
                               force_turn: bool = False) -> str:
  """Builds the gst-launch description of the publishing pipeline: a webrtcbin named 'sendonly'
  fed by the video and audio branches."""
  bundle_policy = (
      BUNDLE_POLICY_MAX_BUNDLE if audio_pipeline and video_pipeline else BUNDLE_POLICY_NONE)
  description = [f'webrtcbin name={WEBRTCBIN_NAME} bundle-policy={bundle_policy}']
  if force_turn:
    description.append('ice-transport-policy=relay')
  if stun_server:
    description.append(f'stun-server={stun_server}')
  if video_pipeline:
    description.append(f'{video_pipeline} ! {WEBRTCBIN_NAME}.')
  if audio_pipeline:
    description.append(f'{audio_pipeline} ! {WEBRTCBIN_NAME}.')
  return ' '.join(description)


# pylint: disable=unsubscriptable-object,too-many-instance-attributes
class GstMediaEngine(media_engine.MediaEngine):
  def __init__(self, whip_config: WhipConfig) -> None:
    super().__init__()
    self.audio_pipeline = whip_config.audio_pipeline
    self.video_pipeline = whip_config.video_pipeline
    self.force_turn = whip_config.force_turn
    self.eos_sink_name = whip_config.eos_sink_name
    self.jitter_buffer_ms = whip_config.jitter_buffer_ms

    self.stun_server: Optional[str] = None
    self.turn_servers: List[str] = []

    self.pipeline = None
    self.webrtc = None
    self.dtls = None
    self.main_loop = None
    self.main_loop_thread: Optional[threading.Thread] = None

  def set_stun_server(self, uri: Optional[str]) -> None:
    self.stun_server = uri

  def add_relay_server(self, uri: str) -> bool:
    if not uri.startswith('turn://') and not uri.startswith('turns://'):
      return False
    self.turn_servers.append(uri)
    return True

  def start(self) -> None:
    Gst.init(None)
    missing = check_plugins()
    if missing:
      raise MediaEngineError(f"Missing required gstreamer plugins: {', '.join(missing)}",
                             layer='pipeline')

    description = build_pipeline_description(
        self.audio_pipeline, self.video_pipeline, self.stun_server, self.force_turn)
    logger.info(f'Initializing the GStreamer pipeline:\n{description}')
    try:
      self.pipeline = Gst.parse_launch(description)
    except GLib.Error as err:
      raise MediaEngineError(f'Failed to parse/launch the pipeline: {err.message}',
                             layer='pipeline') from err

    if self.eos_sink_name:
      self.watch_end_of_stream(self.eos_sink_name)

    self.webrtc = self.pipeline.get_by_name(WEBRTCBIN_NAME)
    for turn_server in self.turn_servers:
      if not self.webrtc.emit('add-turn-server', turn_server):
        logger.warning(f'Error adding TURN server ({turn_server})')

    self.webrtc.connect('on-negotiation-needed', self.on_negotiation_needed)
    self.webrtc.connect('on-ice-candidate', self.on_ice_candidate)
    self.webrtc.connect('notify::connection-state', self.on_connection_state)
    self.webrtc.connect('notify::ice-gathering-state', self.on_ice_gathering_state)
    self.webrtc.connect('notify::ice-connection-state', self.on_ice_connection_state)

    # if a latency value has been configured, enforce it
    rtpbin = self.webrtc.get_by_name('rtpbin')
    if self.jitter_buffer_ms >= 0:
      rtpbin.set_property('latency', self.jitter_buffer_ms)
      rtpbin.set_property('buffer-mode', 0)
    logger.info('Configured jitter-buffer size (latency) for PeerConnection to '
                f"{rtpbin.get_property('latency')}ms")

    bus = self.pipeline.get_bus()
    bus.add_signal_watch()
    bus.connect('message::error', self.on_bus_error)

    self.main_loop = GLib.MainLoop()
    self.main_loop_thread = threading.Thread(
        target=self.main_loop.run, name='gst_main_loop', daemon=True)
    self.main_loop_thread.start()

    self.pipeline.set_state(Gst.State.READY)
    logger.info('Starting the GStreamer pipeline')
    if self.pipeline.set_state(Gst.State.PLAYING) == Gst.StateChangeReturn.FAILURE:
      raise MediaEngineError('Failed to set the pipeline state to playing', layer='pipeline')

  def stop(self) -> None:
    if self.pipeline is not None:
      self.pipeline.set_state(Gst.State.NULL)
      bus = self.pipeline.get_bus()
      bus.remove_signal_watch()
      self.pipeline = None
      self.webrtc = None
      self.dtls = None
    if self.main_loop is not None:
      self.main_loop.quit()
      self.main_loop_thread.join()
      self.main_loop = None
      self.main_loop_thread = None

  def watch_end_of_stream(self, sink_name: str) -> None:
    sink = self.pipeline.get_by_name(sink_name)
    if sink is None:
      logger.warning(f'No element named {sink_name}, EOS will not be detected')
      return
    sink.get_static_pad('sink').add_probe(Gst.PadProbeType.EVENT_DOWNSTREAM, self.on_sink_event)

  def create_offer(self) -> None:
    promise = Gst.Promise.new_with_change_func(self.on_offer_created, None)
    self.webrtc.emit('create-offer', None, promise)

  def set_local_description(self, sdp: str) -> None:
    description = parse_session_description(GstWebRTC.WebRTCSDPType.OFFER, sdp)
    promise = Gst.Promise.new()
    self.webrtc.emit('set-local-description', description, promise)
    promise.interrupt()

    # now that a DTLS stack is available, try monitoring the DTLS state too
    self.dtls = self.webrtc.get_by_name('dtlsdec0')
    if self.dtls is not None:
      self.dtls.connect('notify::connection-state', self.on_dtls_state)

  def set_remote_description(self, sdp: str) -> None:
    description = parse_session_description(GstWebRTC.WebRTCSDPType.ANSWER, sdp)
    promise = Gst.Promise.new()
    self.webrtc.emit('set-remote-description', description, promise)
    promise.interrupt()

  def add_ice_candidate(self, mline_index: int, candidate: str) -> None:
    self.webrtc.emit('add-ice-candidate', mline_index, candidate)

  # GStreamer callbacks
  def on_negotiation_needed(self, _element) -> None:
    self.listener.on_negotiation_needed()

  def on_offer_created(self, promise, _user_data) -> None:
    if promise.wait() != Gst.PromiseResult.REPLIED:
      self.listener.on_error('Failed to create the offer')
      return
    offer = promise.get_reply().get_value('offer')
    self.listener.on_offer_created(offer.sdp.as_text())

  def on_ice_candidate(self, _element, mline_index: int, candidate: str) -> None:
    self.listener.on_local_candidate(mline_index, candidate)

  def on_connection_state(self, element, _pspec) -> None:
    state = CONNECTION_STATES.get(int(element.get_property('connection-state')))
    if state is not None:
      self.listener.on_connection_state_changed(state)

  def on_ice_gathering_state(self, element, _pspec) -> None:
    state = ICE_GATHERING_STATES.get(int(element.get_property('ice-gathering-state')))
    if state is not None:
      self.listener.on_ice_gathering_state_changed(state)

  def on_ice_connection_state(self, element, _pspec) -> None:
    state = ICE_CONNECTION_STATES.get(int(element.get_property('ice-connection-state')))
    if state is not None:
      self.listener.on_ice_connection_state_changed(state)

  def on_dtls_state(self, element, _pspec) -> None:
    state = DTLS_STATES.get(int(element.get_property('connection-state')))
    if state is not None:
      self.listener.on_dtls_state_changed(state)

  def on_sink_event(self, _pad, info):
    if info.get_event().type == Gst.EventType.EOS:
      self.listener.on_end_of_stream()
    return Gst.PadProbeReturn.OK

  def on_bus_error(self, _bus, message) -> None:
    err, debug = message.parse_error()
    logger.error(f'Pipeline error from {message.src.get_name()}: {err.message} ({debug})')
    self.listener.on_error(err.message)


def parse_session_description(sdp_type, sdp: str):
  res, message = GstSdp.SDPMessage.new_from_text(sdp)
  if res != GstSdp.SDPResult.OK:
    raise MediaEngineError(f'Failed to parse the SDP ({res})', layer='sdp')
  return GstWebRTC.WebRTCSessionDescription.new(sdp_type, message)
