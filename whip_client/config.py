"""This config file reads and exposes the environment variables used as defaults for the WHIP client
options, and builds the validated client configuration from the command line.
"""
import argparse
import logging
import os
from dataclasses import dataclass, field
from typing import List, Optional

from dotenv import load_dotenv

from whip_client.lib.exceptions import ConfigError

logger = logging.getLogger(__name__)

WHIP_ENV_CONFIG_FILE = os.getenv('WHIP_ENV_CONFIG_FILE')

# load the env file
load_dotenv(dotenv_path=WHIP_ENV_CONFIG_FILE)

# WHIP endpoint and Bearer token
WHIP_URL = os.getenv('WHIP_URL')
WHIP_TOKEN = os.getenv('WHIP_TOKEN')
# GStreamer pipeline branches for audio/video
WHIP_AUDIO_PIPELINE = os.getenv('WHIP_AUDIO_PIPELINE')
WHIP_VIDEO_PIPELINE = os.getenv('WHIP_VIDEO_PIPELINE')
# ICE options
WHIP_NO_TRICKLE = os.getenv('WHIP_NO_TRICKLE', 'False')
WHIP_FOLLOW_LINK = os.getenv('WHIP_FOLLOW_LINK', 'False')
WHIP_STUN_SERVER = os.getenv('WHIP_STUN_SERVER')
# comma separated list of TURN servers
WHIP_TURN_SERVERS = os.getenv('WHIP_TURN_SERVERS', '')
WHIP_FORCE_TURN = os.getenv('WHIP_FORCE_TURN', 'False')
# media options
WHIP_EOS_SINK_NAME = os.getenv('WHIP_EOS_SINK_NAME')
WHIP_JITTER_BUFFER = os.getenv('WHIP_JITTER_BUFFER', '-1')
# logging level, from 0 (disabled) to 7 (maximum verbosity)
WHIP_LOG_LEVEL = os.getenv('WHIP_LOG_LEVEL', '4')
WHIP_LOG_TIMESTAMPS = os.getenv('WHIP_LOG_TIMESTAMPS', 'False')

# verbosity levels accepted on the command line
LOG_LEVEL_NONE = 0
LOG_LEVEL_INFO = 4
LOG_LEVEL_MAX = 7
# verbosity level -> python logging level
LOG_LEVELS = {
    0: logging.CRITICAL + 10,
    1: logging.CRITICAL,
    2: logging.ERROR,
    3: logging.WARNING,
    4: logging.INFO,
    5: logging.INFO,
    6: logging.DEBUG,
    7: logging.DEBUG
}

# jitter buffer latency above which a warning is logged
HIGH_JITTER_BUFFER_LATENCY_MS = 1000


# pylint: disable=unsubscriptable-object
@dataclass(frozen=True)
class WhipConfig:
  """Validated WHIP client configuration."""
  server_url: str
  token: Optional[str] = None
  audio_pipeline: Optional[str] = None
  video_pipeline: Optional[str] = None
  trickle: bool = True
  follow_link: bool = False
  stun_server: Optional[str] = None
  turn_servers: List[str] = field(default_factory=list)
  force_turn: bool = False
  eos_sink_name: Optional[str] = None
  jitter_buffer_ms: int = -1
  log_level: int = LOG_LEVEL_INFO
  log_timestamps: bool = False

  @property
  def media_kind(self) -> str:
    """Media type of the first m-line, used for the fake m-line of trickle fragments."""
    return 'audio' if self.audio_pipeline else 'video'

  @property
  def python_log_level(self) -> int:
    return LOG_LEVELS[self.log_level]


def env_flag(value: Optional[str]) -> bool:
  return value is not None and value.strip().lower() in ('1', 'true', 'yes', 'on')


def create_arg_parser() -> argparse.ArgumentParser:
  parser = argparse.ArgumentParser(
      prog='whip-client',
      description='Simple WHIP client: publishes GStreamer media to a WHIP endpoint')
  parser.add_argument('-u', '--url', default=WHIP_URL,
                      help='Address of the WHIP endpoint (required)')
  parser.add_argument('-t', '--token', default=WHIP_TOKEN,
                      help='Authentication Bearer token to use (optional)')
  parser.add_argument('-A', '--audio', default=WHIP_AUDIO_PIPELINE,
                      help='GStreamer pipeline to use for audio (optional, required if audio-only)')
  parser.add_argument('-V', '--video', default=WHIP_VIDEO_PIPELINE,
                      help='GStreamer pipeline to use for video (optional, required if video-only)')
  parser.add_argument('-n', '--no-trickle', action='store_true', default=env_flag(WHIP_NO_TRICKLE),
                      help="Don't trickle candidates, but put them in the SDP offer")
  parser.add_argument('-f', '--follow-link', action='store_true',
                      default=env_flag(WHIP_FOLLOW_LINK),
                      help='Use the Link headers returned by the WHIP server to automatically '
                           'configure STUN/TURN servers to use')
  parser.add_argument('-S', '--stun-server', default=WHIP_STUN_SERVER,
                      help='STUN server to use, if any (stun://hostname:port)')
  parser.add_argument('-T', '--turn-server', action='append', dest='turn_servers',
                      default=None,
                      help='TURN server to use, if any; can be passed multiple times '
                           '(turn(s)://username:password@host:port?transport=[udp,tcp])')
  parser.add_argument('-F', '--force-turn', action='store_true', default=env_flag(WHIP_FORCE_TURN),
                      help='In case TURN servers are provided, force using a relay')
  parser.add_argument('-l', '--log-level', type=int, default=int(WHIP_LOG_LEVEL),
                      help='Logging level (0=disable logging, 7=maximum log level; default: 4)')
  parser.add_argument('-L', '--log-timestamps', action='store_true',
                      default=env_flag(WHIP_LOG_TIMESTAMPS),
                      help='Enable logging timestamps')
  parser.add_argument('-e', '--eos-sink-name', default=WHIP_EOS_SINK_NAME,
                      help='GStreamer sink name for EOS signal')
  parser.add_argument('-b', '--jitter-buffer', type=int, default=int(WHIP_JITTER_BUFFER),
                      help="Jitter buffer (latency) to use in RTP, in milliseconds (default: -1, "
                           "use webrtcbin's default)")
  return parser


def build_config(args: argparse.Namespace) -> WhipConfig:
  """Validates the parsed command line and builds the WHIP client configuration.

  Invalid STUN/TURN addresses are dropped with a warning rather than failing.

  :param args: parsed command line, refer to create_arg_parser()
  :return: the validated configuration
  :raises ConfigError: if the WHIP endpoint or both media pipelines are missing
  """
  if not args.url:
    raise ConfigError('Missing WHIP endpoint address')
  if not args.audio and not args.video:
    raise ConfigError('At least one of the audio or video pipelines is required')

  log_level = args.log_level
  if log_level == LOG_LEVEL_NONE:
    log_level = LOG_LEVEL_INFO
  log_level = min(max(log_level, LOG_LEVEL_NONE), LOG_LEVEL_MAX)

  turn_servers = args.turn_servers
  if turn_servers is None:
    turn_servers = [server.strip() for server in WHIP_TURN_SERVERS.split(',') if server.strip()]

  stun_server = args.stun_server
  if stun_server and not stun_server.startswith('stun://'):
    logger.warning('Invalid STUN address (should be stun://hostname:port)')
    stun_server = None

  valid_turn_servers = []
  for turn_server in turn_servers:
    if not turn_server.startswith('turn://') and not turn_server.startswith('turns://'):
      logger.warning('Invalid TURN address (should be '
                     'turn(s)://username:password@host:port?transport=[udp,tcp])')
    else:
      valid_turn_servers.append(turn_server)

  force_turn = args.force_turn
  if force_turn and not args.follow_link and not valid_turn_servers:
    logger.warning("Can't force TURN, no TURN servers provided")
    force_turn = False

  if args.jitter_buffer > HIGH_JITTER_BUFFER_LATENCY_MS:
    logger.warning(f'Very high jitter-buffer latency configured ({args.jitter_buffer})')

  return WhipConfig(
      server_url=args.url,
      token=args.token,
      audio_pipeline=args.audio,
      video_pipeline=args.video,
      trickle=not args.no_trickle,
      follow_link=args.follow_link,
      stun_server=stun_server,
      turn_servers=valid_turn_servers,
      force_turn=force_turn,
      eos_sink_name=args.eos_sink_name,
      jitter_buffer_ms=args.jitter_buffer,
      log_level=log_level,
      log_timestamps=args.log_timestamps)


def log_config(whip_config: WhipConfig) -> None:
  logger.info('--------------------')
  logger.info('Simple WHIP client')
  logger.info('------------------')
  logger.info(f'WHIP endpoint:  {whip_config.server_url}')
  logger.info(f"Bearer Token:   {'(set)' if whip_config.token else '(none)'}")
  logger.info('Trickle ICE:    '
              f"{'yes (HTTP PATCH)' if whip_config.trickle else 'no (candidates in SDP offer)'}")
  logger.info('Auto STUN/TURN: '
              f"{'yes (via Link headers)' if whip_config.follow_link else 'no'}")
  logger.info(f"STUN server:    {whip_config.stun_server or '(none)'}")
  if not whip_config.turn_servers:
    logger.info('TURN server:    (none)')
  for turn_server in whip_config.turn_servers:
    logger.info(f'TURN server:    {turn_server}')
  if whip_config.force_turn:
    logger.info('Forcing TURN:   true')
  logger.info(f"Audio pipeline: {whip_config.audio_pipeline or '(none)'}")
  logger.info(f"Video pipeline: {whip_config.video_pipeline or '(none)'}")
