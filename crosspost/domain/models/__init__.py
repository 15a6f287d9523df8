from crosspost.domain.models.connected_account import ConnectedAccount
from crosspost.domain.models.oauth_state import OAuthState
from crosspost.domain.models.post import Post
from crosspost.domain.models.queue_entry import QueueEntry

__all__ = [
    "ConnectedAccount",
    "OAuthState",
    "Post",
    "QueueEntry",
]
