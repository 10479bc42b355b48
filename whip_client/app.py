import asyncio
import logging
import sys

from whip_client import config
from whip_client.lib.exceptions import ConfigError
from whip_client.lib.session_controller import server

logger = logging.getLogger('app')

LOG_FORMAT = '%(name)s [%(levelname)s] %(message)s'
LOG_FORMAT_WITH_TIMESTAMPS = '%(asctime)s %(name)s [%(levelname)s] %(message)s'


def run() -> None:
  parser = config.create_arg_parser()
  args = parser.parse_args()
  try:
    whip_config = config.build_config(args)
  except ConfigError as err:
    parser.print_usage(sys.stderr)
    print(f'{parser.prog}: error: {err}', file=sys.stderr)
    sys.exit(1)

  logging.basicConfig(
      level=whip_config.python_log_level,
      format=LOG_FORMAT_WITH_TIMESTAMPS if whip_config.log_timestamps else LOG_FORMAT,
      stream=sys.stdout,
      force=True)
  config.log_config(whip_config)

  # the GStreamer bindings are an optional extra, only needed to actually publish media
  from whip_client.lib.gst_media_engine import GstMediaEngine  # pylint: disable=import-outside-toplevel

  result = asyncio.run(server.main(whip_config, GstMediaEngine(whip_config)))
  logger.info('Bye!')
  sys.exit(server.exit_status(result))


if __name__ == '__main__':
  run()
