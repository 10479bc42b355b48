import logging
import sys
import urllib.parse
from typing import Optional

import httpx

from whip_client.lib.session_controller import constants
from whip_client.lib.exceptions import TransportError

logger = logging.getLogger(__name__)


# pylint: disable=unsubscriptable-object
class WhipApiClient:
  def __init__(self, server_url: str, token: Optional[str] = None,
               transport: Optional[httpx.AsyncBaseTransport] = None,
               request_timeout_secs: float = constants.HTTP_REQUEST_TIMEOUT_SECS) -> None:
    """WHIP API client constructor.

    :param server_url: the WHIP endpoint URL, e.g. https://whip.example.com/whip/endpoint
    :param token: Bearer token to authorize requests with, if any
    :param transport: httpx transport to send requests with; None uses the default network
    transport
    :param request_timeout_secs: maximum duration the HTTP client waits for each response
    """
    self.server_url = server_url
    self.token = token
    # opaque value of the resource entity tag, once known
    self.version_token = None
    # entity tag as returned in the ETag header, sent back verbatim in If-Match
    self.entity_tag = None
    self.transport = transport
    self.request_timeout_secs = request_timeout_secs

  async def send(self, http_method: str, url: str, payload: Optional[str] = None,
                 content_type: Optional[str] = None, verbose_logging: bool = True
                 ) -> httpx.Response:
    """Makes an HTTP :http_method request to :url, following redirects manually.

    Redirect responses (see constants.HTTP_REDIRECT_STATUS_CODES) are not followed by httpx: the
    Location header is resolved against the WHIP endpoint URL (refer to resolve_location()) and the
    same request, with the same payload, is sent again, up to constants.MAX_HTTP_REDIRECTS times.

    :param http_method: HTTP method/verb
    :param url: the target URL (the WHIP endpoint or the WHIP resource)
    :param payload: request body, if any
    :param content_type: content type of :payload
    :param verbose_logging: determines whether requests and responses are logged at the INFO or
    DEBUG level
    :return: the final (non-redirect) HTTP response object
    :raises TransportError: if the request could not be completed or there were too many redirects
    """
    log_level = logging.INFO if verbose_logging else logging.DEBUG
    http_method = http_method.upper()
    headers = self.build_headers(payload, content_type)

    target_url = url
    redirects = 0
    async with httpx.AsyncClient(
        transport=self.transport,
        follow_redirects=False,
        verify=True,
        timeout=self.request_timeout_secs) as client:
      while True:
        logger.log(log_level, f'Sending request {http_method} {target_url}')
        try:
          resp = await client.request(
              http_method,
              target_url,
              headers=headers,
              content=payload.encode(constants.UTF_8) if payload is not None else None)
        except (httpx.RequestError, httpx.InvalidURL) as err:
          err_type, err_val, _ = sys.exc_info()
          logger.error(f'Request {http_method} {target_url} failed due to {err_type}: {err_val}')
          raise TransportError(f'{http_method} {target_url} failed: {err_val}') from err
        logger.log(log_level, f'Received response for {http_method} {target_url}: {resp}')

        if resp.status_code not in constants.HTTP_REDIRECT_STATUS_CODES:
          return resp

        redirects += 1
        if redirects > constants.MAX_HTTP_REDIRECTS:
          logger.error('Too many redirects, giving up...')
          raise TransportError(
              f'{http_method} {url} redirected more than {constants.MAX_HTTP_REDIRECTS} times')
        location = resp.headers.get(constants.LOCATION_HEADER_NAME)
        if not location:
          raise TransportError(
              f'{http_method} {target_url} returned {resp.status_code} without a Location header')
        target_url = resolve_location(self.server_url, location)
        logger.info(f'  -- Redirected to {target_url}')

  def build_headers(self, payload: Optional[str] = None,
                    content_type: Optional[str] = None) -> dict:
    """Builds the headers common to all WHIP requests: Authorization when a token is configured,
    If-Match when the version token of the resource is known, and Content-Type for payloads.

    :param payload: request body, if any
    :param content_type: content type of :payload
    :return: dict of request headers
    """
    headers = {}
    if payload is not None and content_type is not None:
      headers[constants.CONTENT_TYPE_HEADER_NAME] = content_type
    if self.token is not None:
      headers[constants.AUTHORIZATION_HEADER_NAME] = f'Bearer {self.token}'
    if self.entity_tag is not None:
      headers[constants.IF_MATCH_HEADER_NAME] = self.entity_tag
    elif self.version_token is not None:
      headers[constants.IF_MATCH_HEADER_NAME] = f'"{self.version_token}"'
    return headers

  def set_entity_tag(self, etag: str) -> None:
    """Keeps the ETag of the WHIP resource: If-Match echoes it as received (weak tags stay weak),
    while version_token holds its opaque value."""
    self.entity_tag = etag.strip()
    self.version_token = parse_entity_tag(etag)


def resolve_location(server_url: str, location: str) -> str:
  """Resolves a Location header value returned by the WHIP endpoint.

  Absolute URLs are used as-is, and network-path references ('//host/path') get the scheme of
  :server_url. Otherwise, the query string of :server_url is dropped and either
  its whole path is replaced (when :location starts with '/') or only its last path segment.

  e.g. with a server URL of https://host/a/b:
    /new/path -> https://host/new/path
    c         -> https://host/a/c

  :param server_url: the WHIP endpoint URL
  :param location: the Location header value
  :return: the absolute URL
  """
  if urllib.parse.urlsplit(location).scheme in ('http', 'https'):
    return location

  parts = urllib.parse.urlsplit(server_url)
  if location.startswith('//'):
    # network-path reference, only the scheme comes from the server URL
    return f'{parts.scheme}:{location}'
  location_path, _, location_query = location.partition('?')
  if location_path.startswith('/'):
    path = location_path
  else:
    path_segments = parts.path.split('/')
    path_segments[-1] = location_path
    path = '/'.join(path_segments)
  return urllib.parse.urlunsplit((parts.scheme, parts.netloc, path, location_query, ''))


def parse_entity_tag(etag: str) -> str:
  """Returns the opaque value of an ETag header, e.g. W/"abc" or "abc" -> abc."""
  etag = etag.strip()
  if etag.startswith('W/'):
    etag = etag[2:]
  if len(etag) >= 2 and etag.startswith('"') and etag.endswith('"'):
    etag = etag[1:-1]
  return etag
