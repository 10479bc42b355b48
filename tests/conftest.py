import asyncio
from typing import Callable, List, Optional
from unittest import mock

import httpx
import pytest

from whip_client.config import WhipConfig
from whip_client.lib import metrics
from whip_client.lib.media_engine import MediaEngine
from whip_client.lib.session_controller.whip_api_client import WhipApiClient

SERVER_URL = 'https://whip.example.com/whip/endpoint'

OFFER_SDP = (
    'v=0\r\n'
    'o=- 1 0 IN IP4 0.0.0.0\r\n'
    's=-\r\n'
    't=0 0\r\n'
    'a=group:BUNDLE video0 audio1\r\n'
    'm=video 9 UDP/TLS/RTP/SAVPF 96\r\n'
    'c=IN IP4 0.0.0.0\r\n'
    'a=ice-ufrag:vUfR\r\n'
    'a=ice-pwd:vPwdVideoSection\r\n'
    'a=mid:video0\r\n'
    'a=sendrecv\r\n'
    'm=audio 9 UDP/TLS/RTP/SAVPF 97\r\n'
    'c=IN IP4 0.0.0.0\r\n'
    'a=ice-ufrag:aUfR\r\n'
    'a=ice-pwd:aPwdAudioSection\r\n'
    'a=mid:audio1\r\n'
    'a=sendrecv\r\n')

ANSWER_SDP = (
    'v=0\r\n'
    'o=- 2 0 IN IP4 203.0.113.1\r\n'
    's=-\r\n'
    't=0 0\r\n'
    'm=video 9 UDP/TLS/RTP/SAVPF 96\r\n'
    'a=mid:video0\r\n'
    'a=candidate:1 1 udp 2130706431 203.0.113.1 40000 typ host\r\n'
    'a=recvonly\r\n'
    'm=audio 9 UDP/TLS/RTP/SAVPF 97\r\n'
    'a=mid:audio1\r\n'
    'a=candidate:2 1 udp 2130706431 203.0.113.1 40002 typ host\r\n')

CANDIDATE_1 = 'candidate:1 1 UDP 2015363327 192.168.1.10 51000 typ host'
CANDIDATE_2 = 'candidate:2 1 UDP 1679819007 198.51.100.7 51000 typ srflx raddr 0.0.0.0 rport 0'


@pytest.fixture(autouse=True)
def statsd():
  with mock.patch.object(metrics, 'statsd') as statsd_mock:
    # don't swallow exceptions raised inside metrics.timed() blocks
    statsd_mock.timed.return_value.__exit__.return_value = False
    yield statsd_mock


class RequestRecorder:
  """httpx.MockTransport handler returning canned responses and recording every request."""

  def __init__(self, responder: Callable[[httpx.Request], httpx.Response]) -> None:
    self.responder = responder
    self.requests: List[httpx.Request] = []

  def __call__(self, request: httpx.Request) -> httpx.Response:
    self.requests.append(request)
    return self.responder(request)

  def by_method(self, method: str) -> List[httpx.Request]:
    return [request for request in self.requests if request.method == method]


def make_api_client(responder: Callable[[httpx.Request], httpx.Response],
                    token: Optional[str] = None) -> (WhipApiClient, RequestRecorder):
  recorder = RequestRecorder(responder)
  api_client = WhipApiClient(SERVER_URL, token, transport=httpx.MockTransport(recorder))
  return api_client, recorder


def make_config(**kwargs) -> WhipConfig:
  options = {
      'server_url': SERVER_URL,
      'video_pipeline': 'videotestsrc is-live=true ! vp8enc ! rtpvp8pay pt=96',
  }
  options.update(kwargs)
  return WhipConfig(**options)


def whip_responder(offer_response: Optional[httpx.Response] = None,
                   patch_status: int = 204,
                   delete_status: int = 200) -> Callable[[httpx.Request], httpx.Response]:
  def respond(request: httpx.Request) -> httpx.Response:
    if request.method == 'POST':
      if offer_response is not None:
        return offer_response
      return httpx.Response(
          201,
          headers={
              'Content-Type': 'application/sdp',
              'Location': '/resource/123',
              'ETag': '"abc"'
          },
          text=ANSWER_SDP)
    if request.method == 'PATCH':
      return httpx.Response(patch_status)
    if request.method == 'DELETE':
      return httpx.Response(delete_status)
    return httpx.Response(405)
  return respond


class FakeMediaEngine(MediaEngine):
  """Media engine replaying a scripted negotiation: asks for negotiation on start, creates
  OFFER_SDP, then reports the scripted candidates and the end of gathering once the local
  description is set."""

  def __init__(self, candidates: Optional[List[str]] = None, complete_gathering: bool = True,
               start_error: Optional[Exception] = None) -> None:
    super().__init__()
    self.candidates = candidates or []
    self.complete_gathering = complete_gathering
    self.start_error = start_error
    self.stun_server = None
    self.relay_servers: List[str] = []
    self.local_description: Optional[str] = None
    self.remote_description: Optional[str] = None
    self.remote_candidates: List[tuple] = []
    self.is_started = False
    self.is_stopped = False

  def set_stun_server(self, uri):
    self.stun_server = uri

  def add_relay_server(self, uri):
    self.relay_servers.append(uri)
    return True

  def start(self):
    if self.start_error is not None:
      raise self.start_error
    self.is_started = True
    self.listener.on_negotiation_needed()

  def stop(self):
    self.is_stopped = True

  def create_offer(self):
    self.listener.on_offer_created(OFFER_SDP)

  def set_local_description(self, sdp):
    self.local_description = sdp
    self.listener.on_ice_gathering_state_changed('gathering')
    for candidate in self.candidates:
      self.listener.on_local_candidate(0, candidate)
    if self.complete_gathering:
      self.listener.on_ice_gathering_state_changed('complete')

  def set_remote_description(self, sdp):
    self.remote_description = sdp

  def add_ice_candidate(self, mline_index, candidate):
    self.remote_candidates.append((mline_index, candidate))


async def wait_until(predicate: Callable[[], bool], timeout_secs: float = 2.0) -> None:
  async def poll():
    while not predicate():
      await asyncio.sleep(0.01)
  await asyncio.wait_for(poll(), timeout_secs)
