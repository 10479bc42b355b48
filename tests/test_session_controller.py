import asyncio
from unittest import mock

import httpx
import pytest

from whip_client.lib.exceptions import MediaEngineError
from whip_client.lib.session_controller import constants, server
from whip_client.lib.session_controller.session_controller import WhipSessionController

from conftest import (
  ANSWER_SDP, CANDIDATE_1, CANDIDATE_2, FakeMediaEngine, make_api_client, make_config,
  wait_until, whip_responder)

RESOURCE_URL = 'https://whip.example.com/resource/123'


def make_controller(responder, engine=None, **config_options):
  api_client, recorder = make_api_client(responder, token='secret')
  engine = engine or FakeMediaEngine(candidates=[CANDIDATE_1, CANDIDATE_2])
  controller = WhipSessionController(
      make_config(token='secret', **config_options), engine, api_client,
      force_exit_fn=mock.Mock())
  return controller, engine, recorder


async def run_until(controller, predicate):
  task = asyncio.create_task(controller.run())
  await wait_until(lambda: predicate() or task.done())
  return task


@pytest.mark.asyncio
async def test_session_is_published_trickled_and_torn_down():
  controller, engine, recorder = make_controller(whip_responder())
  # the timer stops after the end of candidates was sent
  task = await run_until(
      controller, lambda: recorder.by_method('PATCH') and controller.trickle_task is None)

  assert controller.state_manager.get_state() == constants.WHIP_STATE_STARTED
  assert controller.resource_url == RESOURCE_URL
  assert controller.api_client.version_token == 'abc'
  assert engine.remote_description == ANSWER_SDP
  assert engine.remote_candidates == [
      (0, 'candidate:1 1 udp 2130706431 203.0.113.1 40000 typ host')]

  offer = recorder.by_method('POST')[0]
  assert offer.headers['Content-Type'] == 'application/sdp'
  assert offer.headers['Authorization'] == 'Bearer secret'
  assert 'a=sendrecv' not in offer.content.decode()
  assert 'a=candidate' not in offer.content.decode()

  patches = recorder.by_method('PATCH')
  assert len(patches) == 1
  assert str(patches[0].url) == RESOURCE_URL
  assert patches[0].headers['If-Match'] == '"abc"'
  assert patches[0].content.decode() == (
      'a=ice-ufrag:vUfR\r\n'
      'a=ice-pwd:vPwdVideoSection\r\n'
      'm=video 9 RTP/AVP 0\r\n'
      'a=mid:video0\r\n'
      f'a={CANDIDATE_1}\r\n'
      f'a={CANDIDATE_2}\r\n'
      'a=end-of-candidates\r\n')

  controller.on_termination_signal()
  result = await asyncio.wait_for(task, 2)

  deletes = recorder.by_method('DELETE')
  assert len(deletes) == 1
  assert str(deletes[0].url) == RESOURCE_URL
  assert deletes[0].headers['If-Match'] == '"abc"'
  assert result.reason == constants.DISCONNECT_REASON_SHUTDOWN
  assert result.final_state == constants.WHIP_STATE_STARTED
  assert result.resource_url == RESOURCE_URL
  assert result.did_session_start
  assert result.did_teardown_succeed
  assert not result.is_error
  assert engine.is_stopped


@pytest.mark.asyncio
async def test_rejected_offer_tears_down_without_resource():
  controller, engine, recorder = make_controller(
      whip_responder(offer_response=httpx.Response(404)))
  result = await asyncio.wait_for(controller.run(), 2)

  assert result.reason == constants.DISCONNECT_REASON_HTTP_ERROR
  assert result.final_state == constants.WHIP_STATE_API_ERROR
  assert result.is_error
  assert result.resource_url is None
  assert result.did_teardown_succeed is None
  assert not result.did_session_start
  assert [request.method for request in recorder.requests] == ['POST']
  assert engine.remote_description is None


@pytest.mark.asyncio
async def test_answer_with_wrong_content_type_is_fatal():
  offer_response = httpx.Response(
      201, headers={'Content-Type': 'text/html', 'Location': '/resource/123'}, text=ANSWER_SDP)
  controller, _, recorder = make_controller(whip_responder(offer_response=offer_response))
  result = await asyncio.wait_for(controller.run(), 2)

  assert result.reason == constants.DISCONNECT_REASON_HTTP_ERROR
  assert result.final_state == constants.WHIP_STATE_API_ERROR
  assert not recorder.by_method('DELETE')


@pytest.mark.asyncio
async def test_answer_that_is_not_sdp_is_fatal():
  offer_response = httpx.Response(
      201, headers={'Content-Type': 'application/sdp; charset=utf-8'}, text='<html></html>')
  controller, engine, _ = make_controller(whip_responder(offer_response=offer_response))
  result = await asyncio.wait_for(controller.run(), 2)

  assert result.reason == constants.DISCONNECT_REASON_SDP_ERROR
  assert result.final_state == constants.WHIP_STATE_ERROR
  assert engine.remote_description is None


@pytest.mark.asyncio
async def test_unreachable_endpoint_is_a_connection_error():
  def respond(request):
    raise httpx.ConnectError('connection refused', request=request)

  controller, _, _ = make_controller(respond)
  result = await asyncio.wait_for(controller.run(), 2)

  assert result.reason == constants.DISCONNECT_REASON_HTTP_ERROR
  assert result.final_state == constants.WHIP_STATE_CONNECTION_ERROR
  assert result.is_error


@pytest.mark.asyncio
async def test_no_trickle_puts_candidates_in_offer():
  controller, _, recorder = make_controller(whip_responder(), trickle=False)
  task = await run_until(
      controller,
      lambda: controller.state_manager.get_state() == constants.WHIP_STATE_STARTED)
  # give a trickle timer, if there was one, the chance to fire
  await asyncio.sleep(0.3)

  offer = recorder.by_method('POST')[0].content.decode()
  video_section, audio_section = offer.split('m=audio')
  block = f'a={CANDIDATE_1}\r\na={CANDIDATE_2}\r\na=end-of-candidates\r\n'
  assert video_section.endswith(block)
  assert audio_section.endswith(block)
  assert 'a=sendonly' in offer
  assert not recorder.by_method('PATCH')
  assert controller.trickle_task is None

  controller.on_termination_signal()
  result = await asyncio.wait_for(task, 2)
  assert result.did_teardown_succeed


@pytest.mark.asyncio
async def test_concurrent_teardown_sends_a_single_delete():
  controller, _, recorder = make_controller(whip_responder())
  task = await run_until(
      controller,
      lambda: controller.state_manager.get_state() == constants.WHIP_STATE_STARTED)

  results = await asyncio.gather(
      controller.disconnect(constants.DISCONNECT_REASON_ICE_FAILED),
      controller.disconnect(constants.DISCONNECT_REASON_EOS),
      controller.disconnect(constants.DISCONNECT_REASON_SHUTDOWN))
  result = await asyncio.wait_for(task, 2)

  assert len(recorder.by_method('DELETE')) == 1
  assert results[0] is result
  assert result.reason == constants.DISCONNECT_REASON_ICE_FAILED


@pytest.mark.asyncio
async def test_failed_teardown_is_reported_in_result(statsd):
  controller, _, recorder = make_controller(whip_responder(delete_status=404))
  task = await run_until(
      controller,
      lambda: controller.state_manager.get_state() == constants.WHIP_STATE_STARTED)

  controller.on_termination_signal()
  result = await asyncio.wait_for(task, 2)
  assert len(recorder.by_method('DELETE')) == 1
  assert result.did_teardown_succeed is False
  assert not result.is_error


@pytest.mark.asyncio
@pytest.mark.parametrize('report_failure,reason', [
    (lambda listener: listener.on_ice_connection_state_changed('failed'),
     constants.DISCONNECT_REASON_ICE_FAILED),
    (lambda listener: listener.on_connection_state_changed('failed'),
     constants.DISCONNECT_REASON_PEER_CONNECTION_FAILED),
    (lambda listener: listener.on_dtls_state_changed('failed'),
     constants.DISCONNECT_REASON_DTLS_FAILED),
    (lambda listener: listener.on_error('internal data stream error'),
     constants.DISCONNECT_REASON_MEDIA_ENGINE_ERROR),
])
async def test_media_engine_failures_tear_down_session(report_failure, reason):
  controller, engine, recorder = make_controller(whip_responder())
  task = await run_until(
      controller,
      lambda: controller.state_manager.get_state() == constants.WHIP_STATE_STARTED)

  report_failure(engine.listener)
  result = await asyncio.wait_for(task, 2)
  assert result.reason == reason
  assert result.final_state == constants.WHIP_STATE_ERROR
  assert result.is_error
  assert len(recorder.by_method('DELETE')) == 1


@pytest.mark.asyncio
async def test_closed_dtls_and_end_of_stream_are_not_errors():
  controller, engine, _ = make_controller(whip_responder())
  task = await run_until(
      controller,
      lambda: controller.state_manager.get_state() == constants.WHIP_STATE_STARTED)

  engine.listener.on_end_of_stream()
  engine.listener.on_dtls_state_changed('closed')
  result = await asyncio.wait_for(task, 2)
  assert result.reason == constants.DISCONNECT_REASON_EOS
  assert not result.is_error


@pytest.mark.asyncio
async def test_media_engine_start_failure():
  engine = FakeMediaEngine(start_error=MediaEngineError('no webrtcbin', layer='pipeline'))
  controller, _, recorder = make_controller(whip_responder(), engine=engine)
  result = await asyncio.wait_for(controller.run(), 2)

  assert result.reason == constants.DISCONNECT_REASON_MEDIA_ENGINE_ERROR
  assert result.final_state == constants.WHIP_STATE_ERROR
  assert not recorder.requests
  assert engine.is_stopped


class EarlyCandidateEngine(FakeMediaEngine):
  def start(self):
    self.listener.on_local_candidate(0, CANDIDATE_1)


@pytest.mark.asyncio
async def test_candidate_before_offer_tears_down():
  controller, _, recorder = make_controller(whip_responder(), engine=EarlyCandidateEngine())
  result = await asyncio.wait_for(controller.run(), 2)

  assert result.reason == constants.DISCONNECT_REASON_NOT_IN_PEER_CONNECTION
  assert not recorder.requests
  assert len(controller.candidate_queue) == 0


@pytest.mark.asyncio
async def test_renegotiation_is_ignored():
  controller, engine, recorder = make_controller(whip_responder())
  task = await run_until(
      controller,
      lambda: controller.state_manager.get_state() == constants.WHIP_STATE_STARTED)

  engine.listener.on_negotiation_needed()
  await asyncio.sleep(0.05)
  assert len(recorder.by_method('POST')) == 1
  assert controller.state_manager.get_state() == constants.WHIP_STATE_STARTED

  controller.on_termination_signal()
  await asyncio.wait_for(task, 2)


@pytest.mark.asyncio
async def test_discovered_servers_configure_media_engine():
  def respond(request):
    if request.method == 'OPTIONS':
      return httpx.Response(200, headers=[
          ('Link', '<stun:stun.example.com:3478>; rel="ice-server"'),
          ('Link', '<turn:turn.example.com?transport=udp>; rel="ice-server"; username="u"; '
                   'credential="c"')
      ])
    return whip_responder()(request)

  controller, engine, recorder = make_controller(
      respond, follow_link=True, stun_server='stun://fallback.example.com',
      turn_servers=['turn://a:b@fallback.example.com'])
  task = await run_until(
      controller,
      lambda: controller.state_manager.get_state() == constants.WHIP_STATE_STARTED)

  assert recorder.requests[0].method == 'OPTIONS'
  assert engine.stun_server == 'stun://stun.example.com:3478'
  assert engine.relay_servers == ['turn://u:c@turn.example.com?transport=udp']

  controller.on_termination_signal()
  await asyncio.wait_for(task, 2)


@pytest.mark.asyncio
async def test_explicit_servers_are_used_when_discovery_fails():
  def respond(request):
    if request.method == 'OPTIONS':
      return httpx.Response(404)
    return whip_responder()(request)

  controller, engine, _ = make_controller(
      respond, follow_link=True, stun_server='stun://fallback.example.com',
      turn_servers=['turn://a:b@fallback.example.com'])
  task = await run_until(
      controller,
      lambda: controller.state_manager.get_state() == constants.WHIP_STATE_STARTED)

  assert engine.stun_server == 'stun://fallback.example.com'
  assert engine.relay_servers == ['turn://a:b@fallback.example.com']

  controller.on_termination_signal()
  await asyncio.wait_for(task, 2)


def test_repeated_signals_force_exit():
  controller, _, _ = make_controller(whip_responder())
  for _ in range(constants.MAX_GRACEFUL_TERMINATION_SIGNALS):
    controller.on_termination_signal()
  controller.force_exit_fn.assert_not_called()

  controller.on_termination_signal()
  controller.force_exit_fn.assert_called_once_with(1)


class BrokenEngine(FakeMediaEngine):
  def start(self):
    raise RuntimeError('unexpected')


@pytest.mark.asyncio
async def test_server_main_reports_unhandled_exceptions(statsd):
  result = await server.main(make_config(), BrokenEngine(), make_api_client(whip_responder())[0])
  assert result is None
  assert server.exit_status(result) == 1
  tags = statsd.increment.call_args.kwargs['tags']
  assert 'whip.error_type:client.terminated_with_error' in tags


@pytest.mark.asyncio
async def test_server_main_returns_session_result():
  api_client, _ = make_api_client(whip_responder(offer_response=httpx.Response(500)))
  result = await server.main(make_config(), FakeMediaEngine(), api_client)
  assert result.reason == constants.DISCONNECT_REASON_HTTP_ERROR
  assert server.exit_status(result) == 1


class MalformedOfferEngine(FakeMediaEngine):
  def create_offer(self):
    self.listener.on_offer_created('v=0\r\nx\r\nm=video 9 UDP/TLS/RTP/SAVPF 96\r\na=mid:0\r\n')


@pytest.mark.asyncio
async def test_malformed_offer_is_fatal_before_any_request(statsd):
  controller, engine, recorder = make_controller(
      whip_responder(), engine=MalformedOfferEngine())
  result = await asyncio.wait_for(controller.run(), 2)

  assert result.reason == constants.DISCONNECT_REASON_SDP_ERROR
  assert result.final_state == constants.WHIP_STATE_ERROR
  assert result.is_error
  assert result.resource_url is None
  assert not recorder.requests
  assert engine.remote_description is None
  tags = [call.kwargs['tags'] for call in statsd.increment.call_args_list]
  assert any('whip.error_type:client.sdp_error' in call_tags for call_tags in tags)


@pytest.mark.asyncio
async def test_weak_entity_tag_is_sent_back_unchanged():
  offer_response = httpx.Response(
      201,
      headers={'Content-Type': 'application/sdp', 'Location': '/resource/123', 'ETag': 'W/"v1"'},
      text=ANSWER_SDP)
  controller, _, recorder = make_controller(whip_responder(offer_response=offer_response))
  task = await run_until(
      controller, lambda: recorder.by_method('PATCH') and controller.trickle_task is None)

  assert controller.api_client.version_token == 'v1'
  assert recorder.by_method('PATCH')[0].headers['If-Match'] == 'W/"v1"'

  controller.on_termination_signal()
  await asyncio.wait_for(task, 2)
  assert recorder.by_method('DELETE')[0].headers['If-Match'] == 'W/"v1"'
