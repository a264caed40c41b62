class MessagingError(Exception):
    """Base exception for the messaging core"""
    pass


class ValidationError(MessagingError):
    """Raised when input is rejected before anything is written"""
    pass


class NotAParticipant(ValidationError):
    """Sender is neither a participant nor the system sender"""
    def __init__(self, conversation_id: str, user_id: str):
        super().__init__(f"User {user_id} is not a participant of conversation {conversation_id}")
        self.conversation_id = conversation_id
        self.user_id = user_id


class NotAuthenticated(MessagingError):
    """No valid identity on the request"""
    pass


class ConversationNotFound(MessagingError):
    """Conversation does not exist or is not committed yet"""
    def __init__(self, conversation_id: str):
        super().__init__(f"Conversation not found: {conversation_id}")
        self.conversation_id = conversation_id


class TransientStoreError(MessagingError):
    """Network or timeout failure talking to the store"""
    pass


class CreateConversationFailed(MessagingError):
    """A conversation could not be fully provisioned and was rolled back"""
    def __init__(self, title: str, step: str):
        super().__init__(f"Creating conversation {title!r} failed at step {step!r}")
        self.title = title
        self.step = step


class ChannelLost(MessagingError):
    """Live channel dropped and could not be re-established"""
    def __init__(self, conversation_id: str, last_seq: int):
        super().__init__(f"Live channel for conversation {conversation_id} lost after seq {last_seq}")
        self.conversation_id = conversation_id
        self.last_seq = last_seq
