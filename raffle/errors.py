class RegistryError(Exception):
    code: str = 'registry_error'
    status: int = 400

    def __init__(
        self, message: str = '', *, code: str | None = None, status: int | None = None
    ):
        super().__init__(message or self.__class__.__name__)
        if code:
            self.code = code
        if status:
            self.status = status


class InvalidInput(RegistryError):
    code = 'invalid_input'
    status = 422


class AlreadySold(RegistryError):
    code = 'already_sold'
    status = 409

    def __init__(self, number: int, existing_buyer: str):
        super().__init__(f'Ticket {number} already belongs to {existing_buyer}')
        self.number = number
        self.existing_buyer = existing_buyer


class NotSold(RegistryError):
    code = 'not_sold'
    status = 404

    def __init__(self, number: int):
        super().__init__(f'Ticket {number} has not been sold')
        self.number = number


class StoreUnavailable(RegistryError):
    code = 'store_unavailable'
    status = 503


class Timeout(RegistryError):
    code = 'timeout'
    status = 504


class DocumentExists(Exception):
    """
    The key is already occupied in the collection.
    """

    def __init__(self, collection: str, key: str):
        super().__init__(f'{collection}/{key} already exists')
        self.collection = collection
        self.key = key
