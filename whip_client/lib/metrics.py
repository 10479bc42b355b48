from __future__ import annotations
import logging
import os
from typing import Optional, TYPE_CHECKING

import datadog

if TYPE_CHECKING:
  from datadog.dogstatsd.context import TimedContextManagerDecorator

logger = logging.getLogger(__name__)

FEATURE_METRIC_PREFIX = 'whip'
PROJECT_METRIC_PREFIX = 'client'
METRIC_PREFIX = f'{FEATURE_METRIC_PREFIX}.{PROJECT_METRIC_PREFIX}'

METRIC_CATEGORY_PERFORMANCE = f'{FEATURE_METRIC_PREFIX}.category:performance'
METRIC_CATEGORY_SESSION_LIFECYCLE = f'{FEATURE_METRIC_PREFIX}.category:session_lifecycle'
METRIC_CATEGORY_ERROR = f'{FEATURE_METRIC_PREFIX}.category:error'
METRIC_CATEGORIES = [
  METRIC_CATEGORY_PERFORMANCE,
  METRIC_CATEGORY_SESSION_LIFECYCLE,
  METRIC_CATEGORY_ERROR
]

SERVICE_TAG = f"service:{os.getenv('WHIP_SERVICE_NAME', 'whip-client')}"

# default tags to apply to all metrics submitted by this statsd client
DEFAULT_TAGS = [SERVICE_TAG]

datadog_options = {
  'statsd_host': os.getenv('DD_AGENT_HOST'),
  'statsd_port': int(os.getenv('DD_DOGSTATSD_PORT', '8125')),
  'statsd_constant_tags': DEFAULT_TAGS
}
logger.debug(f'Initializing datadog with options {datadog_options}')
datadog.initialize(**datadog_options)

statsd = datadog.statsd


def report_discovery_error() -> None:
  """Reports metric indicating the OPTIONS request used to auto-configure STUN/TURN servers failed
  or returned no usable Link headers.

  :return: None
  """
  _report_error('discovery_error')


def report_offer_sent() -> None:
  """Reports metric indicating the SDP offer was sent to the WHIP endpoint.

  :return: None
  """
  _report_session_lifecycle_event('offer_sent')


# pylint: disable=unsubscriptable-object
def report_offer_rejected(status_code: Optional[str] = None) -> None:
  """Reports metric indicating the WHIP endpoint did not accept the SDP offer, or answered with
  something that is not a usable SDP answer.

  :param status_code: HTTP status code of the response, if any
  :return: None
  """
  tags = []
  if status_code is not None:
    tags.append(f'status_code:{status_code}')
  _report_error('offer_rejected', tags)


def report_sdp_error() -> None:
  """Reports metric indicating the local offer or the remote answer could not be processed.

  :return: None
  """
  _report_error('sdp_error')


def report_session_started() -> None:
  """Reports metric indicating the answer was accepted and the session is now established.

  :return: None
  """
  _report_session_lifecycle_event('session_started')


def report_session_completed() -> None:
  """Reports metric indicating the session was torn down (possibly with an error).

  :return: None
  """
  _report_session_lifecycle_event('session_completed')


def report_trickle_error(status_code: Optional[str] = None) -> None:
  """Reports metric indicating a trickle PATCH request failed.

  :param status_code: HTTP status code of the response, if a response was received
  :return: None
  """
  tags = []
  if status_code is not None:
    tags.append(f'status_code:{status_code}')
  _report_error('trickle_error', tags)


def report_teardown_error(status_code: Optional[str] = None) -> None:
  """Reports metric indicating the DELETE request to tear down the WHIP resource failed.

  :param status_code: HTTP status code of the response, if a response was received
  :return: None
  """
  tags = []
  if status_code is not None:
    tags.append(f'status_code:{status_code}')
  _report_error('teardown_error', tags)


def report_media_engine_error(layer: str) -> None:
  """Reports metric indicating the media engine reported a fatal failure.

  :param layer: the failing layer, e.g. 'ice', 'dtls', 'peer_connection'
  :return: None
  """
  _report_error('media_engine_error', [f'layer:{layer}'])


def report_forced_exit() -> None:
  """Reports metric indicating the client was terminated by repeated signals without tearing down
  the session.

  :return: None
  """
  _report_error('forced_exit')


def report_terminated_with_error() -> None:
  """Reports a metric that should be recorded whenever the client terminates due to an unhandled
  exception.

  :return: None
  """
  _report_error('terminated_with_error')


def _report_error(error_type: str, tags: Optional[list] = None) -> None:
  tags = tags or []
  tags.append(METRIC_CATEGORY_ERROR)
  tags.append(f'{FEATURE_METRIC_PREFIX}.error_type:{PROJECT_METRIC_PREFIX}.{error_type}')
  statsd.increment(
      f'{METRIC_PREFIX}.error',
      sample_rate=1,
      tags=tags)


def _report_session_lifecycle_event(event_name: str) -> None:
  """Reports metric for a WHIP session lifecycle event.

  :param event_name: session lifecycle event name for the metric
  :return: None
  """
  statsd.increment(
      f'{METRIC_PREFIX}.{event_name}',
      sample_rate=1,
      tags=[METRIC_CATEGORY_SESSION_LIFECYCLE])


# datadog.statsd wrappers
def timed(metric_name: str, tags: Optional[list] = None) -> TimedContextManagerDecorator:
  """Wraps :meth:`datadog.dogstatsd.DogStatsd.timed` context manager / decorator (refer to
  https://datadogpy.readthedocs.io/en/latest/#datadog.dogstatsd.base.DogStatsd.timed)

  Always adds a default tag to specify the performance metric category, and prefixes the metric
  name.

  :param metric_name: base name for the metric
  :param tags: tags to add to the metric
  :return: a timing context manager
  """
  metric = f'{METRIC_PREFIX}.{metric_name}'
  tags = list(set((tags or []) + [METRIC_CATEGORY_PERFORMANCE]))
  return statsd.timed(metric, sample_rate=1, tags=tags)
