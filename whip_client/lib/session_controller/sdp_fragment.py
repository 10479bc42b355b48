"""Minimal, line oriented scanning of session descriptions.

This is not an SDP parser: the WHIP client only needs the ICE credentials and the mid
of the first media section (everything is bundled on it), the inline candidates of the answer, and
a way to append its own candidates to an offer when it is not trickling.
"""
import logging
from dataclasses import dataclass
from typing import List, Optional

from whip_client.lib.exceptions import SdpParseError

logger = logging.getLogger(__name__)

CRLF = '\r\n'


@dataclass(frozen=True)
# pylint: disable=unsubscriptable-object
class IceFragment:
  """ICE credentials and bundle mid extracted from the first media section of an offer."""
  ice_ufrag: Optional[str] = None
  ice_pwd: Optional[str] = None
  first_mid: Optional[str] = None


def extract_ice_fragment(sdp: str) -> IceFragment:
  """Scans :sdp line by line and returns the ICE credentials and mid to use when trickling.

  Session level a=ice-ufrag/a=ice-pwd attributes are captured until the first m-line; attributes in
  the first media section override them and a=mid is captured too. The scan stops at the second
  m-line. Every other line is ignored.

  :param sdp: full offer (or answer) text, with CRLF or LF line endings
  :return: the extracted IceFragment
  :raises SdpParseError: if a non-empty line is shorter than 3 characters or its second character
  is not '='
  """
  values = {}
  in_first_mline = False
  for line in sdp.split('\n'):
    line = line.rstrip('\r')
    if not line:
      continue
    if len(line) < 3:
      logger.error(f'Invalid line ({len(line)} bytes): {line}')
      raise SdpParseError(f'Invalid SDP line ({len(line)} bytes): {line!r}')
    if line[1] != '=':
      logger.error(f"Invalid line (2nd char is not '='): {line}")
      raise SdpParseError(f"Invalid SDP line (2nd char is not '='): {line!r}")

    line_type = line[0]
    if line_type == 'm':
      if in_first_mline:
        # end of the first m-line, the one we bundle on
        break
      in_first_mline = True
    elif line_type == 'a':
      name, _, value = line[2:].partition(':')
      if not value:
        continue
      name = name.lower()
      if name in ('ice-ufrag', 'ice-pwd') or (in_first_mline and name == 'mid'):
        values[name] = value

  return IceFragment(
      ice_ufrag=values.get('ice-ufrag'),
      ice_pwd=values.get('ice-pwd'),
      first_mid=values.get('mid'))


def rewrite_sendrecv_to_sendonly(sdp: str) -> str:
  """Some WHIP servers refuse offers with sendrecv directions, and we only ever send media."""
  return sdp.replace('sendrecv', 'sendonly')


def append_candidates_to_media_sections(sdp: str, candidates: List[str]) -> str:
  """Appends an a=<candidate> line for each of :candidates at the end of every media section.

  Used when not trickling, so that the offer carries all the gathered candidates. Empty lines are
  dropped, and the result always uses CRLF line endings.

  :param sdp: the offer text
  :param candidates: candidate attribute values (without the 'a=' prefix), in gathering order
  :return: the augmented offer text
  """
  attributes = ''.join(f'a={candidate}{CRLF}' for candidate in candidates)
  expanded_sdp = []
  mlines = 0
  for line in sdp.split(CRLF):
    if line.startswith('m='):
      mlines += 1
      if mlines > 1:
        expanded_sdp.append(attributes)
    if len(line) > 2:
      expanded_sdp.append(f'{line}{CRLF}')
  expanded_sdp.append(attributes)
  return ''.join(expanded_sdp)


def find_first_mline_candidates(sdp: str) -> List[str]:
  """Returns the candidates (without the 'a=' prefix) found in the first media section of :sdp.

  Servers that don't trickle put their candidates in the answer; these get fed to the media engine
  as if they had been trickled.
  """
  candidates = []
  mlines = 0
  for line in sdp.split(CRLF):
    if line.startswith('m='):
      mlines += 1
      if mlines > 1:
        break
    elif mlines == 1 and line.startswith('a=candidate'):
      candidates.append(line[2:])
  return candidates
