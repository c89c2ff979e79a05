from .common import AbstractCommonDAO, CommonDAO, error_handler
from .account import AbstractAccountDAO, AccountDAO
from .friend import AbstractFriendDAO, FriendDAO
from .conversation import AbstractConversationDAO, ConversationDAO
from .message import AbstractMessageDAO, MessageDAO
