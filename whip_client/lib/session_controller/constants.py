UTF_8 = 'UTF-8'

# HTTP method strings
HTTP_OPTIONS = 'OPTIONS'
HTTP_POST = 'POST'
HTTP_PATCH = 'PATCH'
HTTP_DELETE = 'DELETE'

# HTTP header names
AUTHORIZATION_HEADER_NAME = 'Authorization'
IF_MATCH_HEADER_NAME = 'If-Match'
ETAG_HEADER_NAME = 'ETag'
LOCATION_HEADER_NAME = 'Location'
LINK_HEADER_NAME = 'Link'
CONTENT_TYPE_HEADER_NAME = 'Content-Type'

# Content types for the offer/answer exchange and for trickled candidate fragments
CONTENT_TYPE_SDP = 'application/sdp'
CONTENT_TYPE_TRICKLE_ICE_SDPFRAG = 'application/trickle-ice-sdpfrag'

# Statuses the WHIP client follows manually by resolving the Location header and resending the
#  same request. 303 is left out, it changes the request method.
HTTP_REDIRECT_STATUS_CODES = [301, 302, 307, 308]
# Max number of redirects followed for a single request before giving up
MAX_HTTP_REDIRECTS = 10
# Timeout for each individual WHIP HTTP request
HTTP_REQUEST_TIMEOUT_SECS = 10

# Statuses accepted as a success for each step of the WHIP exchange
DISCOVERY_SUCCESS_STATUS_CODES = [200, 204]
OFFER_SUCCESS_STATUS_CODE = 201
TRICKLE_SUCCESS_STATUS_CODES = [200, 204]
TEARDOWN_SUCCESS_STATUS_CODE = 200

# WHIP session states, in the order a successful session goes through them. A session only moves
#  forward through this list, except for the error states at the end, which can be entered from
#  anywhere and are never left.
WHIP_SESSION_STATES = [
    # Initial state, nothing happened yet
    'disconnected',
    # The session was started; STUN/TURN discovery (if enabled) happens here
    'connecting',
    # The WHIP endpoint could not be reached at all
    'connection_error',
    # Discovery is done and the media engine can be configured
    'connected',
    # The media engine is running and producing media
    'publishing',
    # The media engine asked for negotiation and an offer is being created
    'offer_prepared',
    # The answer was accepted and handed to the media engine
    'started',
    # The WHIP endpoint rejected the offer or answered with something unusable
    'api_error',
    # Any other fatal error (SDP, media engine failures)
    'error'
]
WHIP_STATE_DISCONNECTED = WHIP_SESSION_STATES[0]
WHIP_STATE_CONNECTING = WHIP_SESSION_STATES[1]
WHIP_STATE_CONNECTION_ERROR = WHIP_SESSION_STATES[2]
WHIP_STATE_CONNECTED = WHIP_SESSION_STATES[3]
WHIP_STATE_PUBLISHING = WHIP_SESSION_STATES[4]
WHIP_STATE_OFFER_PREPARED = WHIP_SESSION_STATES[5]
WHIP_STATE_STARTED = WHIP_SESSION_STATES[6]
WHIP_STATE_API_ERROR = WHIP_SESSION_STATES[7]
WHIP_STATE_ERROR = WHIP_SESSION_STATES[8]

WHIP_ERROR_STATES = [WHIP_STATE_CONNECTION_ERROR, WHIP_STATE_API_ERROR, WHIP_STATE_ERROR]

# Teardown reasons
DISCONNECT_REASON_SHUTDOWN = 'Shutting down'
DISCONNECT_REASON_EOS = 'Shutting down (EOS)'
DISCONNECT_REASON_SDP_ERROR = 'SDP error'
DISCONNECT_REASON_HTTP_ERROR = 'HTTP error'
DISCONNECT_REASON_NOT_IN_PEER_CONNECTION = "Can't trickle, not in a PeerConnection"
DISCONNECT_REASON_PEER_CONNECTION_FAILED = 'PeerConnection failed'
DISCONNECT_REASON_PEER_CONNECTION_CLOSED = 'PeerConnection closed'
DISCONNECT_REASON_ICE_FAILED = 'ICE failed'
DISCONNECT_REASON_DTLS_FAILED = 'DTLS failed'
DISCONNECT_REASON_MEDIA_ENGINE_ERROR = 'Media engine error'

# Trickle ICE
# Interval between two flushes of the queued local candidates
TRICKLE_FLUSH_INTERVAL_SECS = 0.1
# Queued in place of a candidate once gathering is complete
END_OF_CANDIDATES = 'end-of-candidates'
# Only candidates for this media line and component are trickled, since everything is bundled
BUNDLE_MLINE_INDEX = 0
BUNDLE_COMPONENT_ID = 1

# Number of termination signals tolerated before the process exits without tearing down the
#  session on the WHIP endpoint
MAX_GRACEFUL_TERMINATION_SIGNALS = 3
