# tenantchat wire protocol constants (event names, prefixes, collection names)

PROTOCOL_VERSION = 1

# Envelope keys
K_V = "v"
K_EVENT = "event"
K_ARGS = "args"
K_DATA = "data"
K_TS = "ts"

# Client -> server events
E_CREATE_ROOM = "createRoom"
E_JOIN_ROOM = "joinRoom"
E_LEAVE_ROOM = "leaveRoom"
E_SEND_MESSAGE = "sendMessage"
E_EDIT_MESSAGE = "editMessage"
E_DELETE_MESSAGE = "deleteMessage"
E_TYPING = "typing"
E_STOP_TYPING = "stopTyping"
E_DELETE_ROOM = "deleteRoom"

# Server -> client events
S_ROOM_CREATED = "roomCreated"
S_JOIN_CONFIRMATION = "joinConfirmation"
S_NEW_MESSAGE = "newMessage"
S_MESSAGE_UPDATED = "messageUpdated"
S_MESSAGE_DELETED = "messageDeleted"
S_ROOM_LEFT = "roomLeft"
S_USER_LEFT_ROOM = "userLeftRoom"
S_USER_JOINED = "userJoined"
S_ONLINE_USERS_UPDATE = "onlineUsersUpdate"
S_USER_TYPING = "userTyping"
S_USER_STOPPED_TYPING = "userStoppedTyping"
S_ROOM_DELETED = "roomDeleted"
S_FILES_DELETED = "filesDeleted"
S_VOICES_DELETED = "voicesDeleted"
S_ERROR_MESSAGE = "errorMessage"

# Room id shapes
TENANT_ROOM_PREFIX = "tenant_"
ROOM_PREFIX = "room_"
ROOM_ID_RANDOM_CHARS = 9

# Attachment namespaces
NS_FILE = "file"
NS_VOICE = "voice"
ATTACHMENT_NAMESPACES = (NS_FILE, NS_VOICE)

# Document store collections
COLL_ROOMS = "rooms"
COLL_MESSAGES = "messages"
COLL_MEMBERS = "users"
COLL_ADMINS = "admins"
COLL_CLIENTS = "clients"
COLL_TENANTS = "companyregistrations"

# Synthetic authors and fallbacks
SYSTEM_AUTHOR_ID = "system"
SYSTEM_AUTHOR_NAME = "System"
ANONYMOUS_NAME = "Anonymous"
UNKNOWN_TENANT_NAME = "Unknown Company"

DISPLAY_NAME_MAX_CHARS = 64

# WebSocket close code used when the upgrade is refused
WS_CLOSE_UNAUTHORIZED = 4401
