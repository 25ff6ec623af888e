# secretaria/core/exceptions.py

class DeliveryError(Exception):
    """Base para todos os erros do protocolo de entrega de respostas do chat."""

class PublishValidationError(DeliveryError, ValueError):
    """Payload de publicação sem sessão ou sem texto (HTTP 400, sem retry)."""

class DurablePersistenceError(DeliveryError, RuntimeError):
    """Falha ao gravar/ler o Response Store. É o fallback de último recurso."""

class BroadcastTransientError(DeliveryError):
    """Canal não chegou a SUBSCRIBED a tempo ou o envio falhou. Esperado sem assinantes."""

class ClientSubmitError(DeliveryError):
    """A mensagem do usuário não pôde ser enviada para a automação."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code
