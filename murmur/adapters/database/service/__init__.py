from .account import AccountService
from .friend import FriendService
from .message import MessageStoreService, STATUS_TRANSITIONS, is_valid_transition
