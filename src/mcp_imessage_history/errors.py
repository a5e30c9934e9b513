class MessagesError(Exception):
    """Base class for errors surfaced to the caller as text."""


class StoreUnavailableError(MessagesError):
    """The Messages database could not be opened."""


class ContactStoreUnavailableError(MessagesError):
    """The AddressBook database is missing or unreadable.

    Never escapes ContactResolver; name resolution falls back to formatting instead.
    """


class ContactNotFoundError(MessagesError):
    def __init__(self, identifier: str):
        super().__init__(f"Contact not found: {identifier}")
        self.identifier = identifier


class InvalidArgumentError(MessagesError):
    """A required argument is blank, a limit is not positive, or a group identifier is malformed."""
