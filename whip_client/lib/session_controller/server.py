from __future__ import annotations
import asyncio
import functools
import logging
import signal
from typing import Optional, TYPE_CHECKING

from whip_client.lib import metrics
from whip_client.lib.session_controller.session_controller import WhipSessionController
from whip_client.lib.session_controller.session_result import WhipSessionResult

if TYPE_CHECKING:
  from whip_client.config import WhipConfig
  from whip_client.lib.media_engine import MediaEngine
  from whip_client.lib.session_controller.whip_api_client import WhipApiClient

logger = logging.getLogger('app')

TERMINATION_SIGNALS = [signal.SIGINT, signal.SIGTERM]


def trigger_termination_request(controller: WhipSessionController, sig: signal.Signals) -> None:
  """Forwards a termination signal to the session controller, which decides whether to tear the
  session down gracefully or to exit right away.

  :param controller: the running session controller
  :param sig: the signal that was received
  :return: None
  """
  logger.info(f'Received termination signal {sig.name}')
  controller.on_termination_signal()


# pylint: disable=unsubscriptable-object
async def main(whip_config: WhipConfig, engine: MediaEngine,
               api_client: Optional[WhipApiClient] = None) -> Optional[WhipSessionResult]:
  try:
    return await _main(whip_config, engine, api_client)
  except Exception:  # pylint: disable=broad-except
    logger.exception('WHIP client failed with unhandled exception')
    metrics.report_terminated_with_error()
    return None
  finally:
    logger.info('Exiting WHIP client')


async def _main(whip_config: WhipConfig, engine: MediaEngine,
                api_client: Optional[WhipApiClient] = None) -> WhipSessionResult:
  controller = WhipSessionController(whip_config, engine, api_client)

  # add termination handlers on the event loop
  loop = asyncio.get_running_loop()
  for sig in TERMINATION_SIGNALS:
    loop.add_signal_handler(sig, functools.partial(trigger_termination_request, controller, sig))

  try:
    result = await controller.run()
  finally:
    for sig in TERMINATION_SIGNALS:
      loop.remove_signal_handler(sig)

  logger.info(f'WHIP session ended: {result}')
  return result


def exit_status(result: Optional[WhipSessionResult]) -> int:
  """Returns the process exit status for a session result: 0 unless the session could not run or
  ended in an error state."""
  if result is None or result.is_error:
    return 1
  return 0
