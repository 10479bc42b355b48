"""Automatic configuration of STUN/TURN servers from the Link headers of the WHIP endpoint, e.g.

  Link: <stun:stun.example.net>; rel="ice-server"
  Link: <turn:turn.example.net?transport=udp>; rel="ice-server"; username="user";
        credential="secret"; credential-type="password"
"""
from __future__ import annotations
import logging
import urllib.parse
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple, TYPE_CHECKING

from whip_client.lib import metrics
from whip_client.lib.session_controller import constants
from whip_client.lib.exceptions import TransportError

if TYPE_CHECKING:
  from whip_client.lib.session_controller.whip_api_client import WhipApiClient

logger = logging.getLogger(__name__)

ICE_SERVER_REL = 'ice-server'


@dataclass
# pylint: disable=unsubscriptable-object
class IceServers:
  """STUN/TURN servers advertised by the WHIP endpoint. Only the first STUN server is kept."""
  stun_server: Optional[str] = None
  turn_servers: List[str] = field(default_factory=list)

  def is_empty(self) -> bool:
    return self.stun_server is None and not self.turn_servers


async def discover_ice_servers(api_client: WhipApiClient) -> IceServers:
  """Sends an OPTIONS request to the WHIP endpoint and builds STUN/TURN server URIs out of the Link
  headers of the response.

  Discovery is optional, so failures are only logged: the caller falls back to any explicitly
  configured servers when the result is empty.

  :param api_client: WHIP API client
  :return: the discovered servers (possibly none)
  """
  ice_servers = IceServers()
  try:
    resp = await api_client.send(constants.HTTP_OPTIONS, api_client.server_url)
  except TransportError:
    logger.exception('Encountered exception while sending OPTIONS request to the WHIP endpoint')
    metrics.report_discovery_error()
    return ice_servers

  if resp.status_code not in constants.DISCOVERY_SUCCESS_STATUS_CODES:
    # didn't get the success we were expecting
    logger.warning(f' [{resp.status_code}] {resp.reason_phrase}')
    metrics.report_discovery_error()
    return ice_servers

  link_headers = resp.headers.get_list(constants.LINK_HEADER_NAME)
  if not link_headers:
    logger.warning('No Link headers in OPTIONS response')
    metrics.report_discovery_error()
    return ice_servers

  logger.info('Auto configuration of STUN/TURN servers:')
  for link_header in link_headers:
    for link in split_link_values(link_header):
      process_link(link.strip(), ice_servers)
  return ice_servers


def process_link(link: str, ice_servers: IceServers) -> None:
  """Adds the STUN or TURN server advertised by a single link value to :ice_servers.

  Links that are not ice-server relations, or that use an unsupported scheme, are skipped.

  :param link: a single link value, e.g. '<stun:stun.example.net>; rel="ice-server"'
  :param ice_servers: the servers discovered so far, updated in place
  :return: None
  """
  if not link:
    return
  logger.info(f'  -- {link}')
  uri, params = parse_link(link)
  if params.get('rel') != ICE_SERVER_REL:
    logger.warning('Missing \'rel="ice-server"\' attribute, skipping...')
    return

  if uri.startswith('stun:'):
    if ice_servers.stun_server is not None:
      logger.warning('Ignoring multiple STUN servers...')
      return
    host = uri[len('stun://'):] if uri.startswith('stun://') else uri[len('stun:'):]
    ice_servers.stun_server = f'stun://{host}'
    logger.info(f'  -- -- {ice_servers.stun_server}')
  elif uri.startswith('turn:') or uri.startswith('turns:'):
    scheme = 'turns' if uri.startswith('turns:') else 'turn'
    host = uri[len(scheme) + 1:]
    if host.startswith('//'):
      host = host[2:]
    username = params.get('username')
    credential = params.get('credential')
    if username and credential:
      # these end up in the userinfo of the TURN uri, so escape them
      address = (f'{scheme}://{urllib.parse.quote(username, safe="")}:'
                 f'{urllib.parse.quote(credential, safe="")}@{host}')
    else:
      address = f'{scheme}://{host}'
    logger.info(f'  -- -- {address}')
    ice_servers.turn_servers.append(address)
  else:
    logger.warning('Unsupported protocol, skipping...')


def parse_link(link: str) -> Tuple[str, Dict[str, Optional[str]]]:
  """Splits a link value into its target URI and its (lowercase-named, unquoted) parameters.

  :param link: a single link value, e.g. '<turn:host?transport=udp>; rel="ice-server"'
  :return: a (uri, params) tuple; parameters without a value map to None
  """
  link = link.strip()
  if link.startswith('<') and '>' in link:
    uri, _, rest = link[1:].partition('>')
  else:
    uri, _, rest = link.partition(';')
  params = {}
  for param in split_params(rest):
    name, sep, value = param.partition('=')
    name = name.strip().lower()
    if not name:
      continue
    value = value.strip()
    if len(value) >= 2 and value.startswith('"') and value.endswith('"'):
      value = value[1:-1]
    params[name] = value if sep else None
  return uri.strip(), params


def split_params(params: str) -> List[str]:
  """Splits ';' separated link parameters, ignoring separators inside quoted strings."""
  result = []
  current = []
  in_quotes = False
  for char in params:
    if char == '"':
      in_quotes = not in_quotes
    if char == ';' and not in_quotes:
      result.append(''.join(current))
      current = []
    else:
      current.append(char)
  result.append(''.join(current))
  return [param for param in (p.strip() for p in result) if param]


def split_link_values(link_header: str) -> List[str]:
  """Splits a Link header value into its comma separated link values, ignoring commas inside quoted
  parameters or inside the <...> target URI."""
  result = []
  current = []
  in_quotes = False
  in_uri = False
  for char in link_header:
    if char == '"' and not in_uri:
      in_quotes = not in_quotes
    elif char == '<' and not in_quotes:
      in_uri = True
    elif char == '>' and not in_quotes:
      in_uri = False
    if char == ',' and not in_quotes and not in_uri:
      result.append(''.join(current))
      current = []
    else:
      current.append(char)
  result.append(''.join(current))
  return [link for link in (value.strip() for value in result) if link]
