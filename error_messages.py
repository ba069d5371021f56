"""User-facing (pt-BR) wording for errors coming out of the remote store or the AI provider."""
import json

from ai_caller import NoCredentialsError, ResponseParseError, is_retryable

UNKNOWN_ERROR = "Ocorreu um erro desconhecido."
RETRY_LATER = "O serviço está sobrecarregado no momento. Tente novamente em instantes."

# Substring (lowercase) -> message; first match wins
_KNOWN_MESSAGES = (
    ("invalid login credentials", "E-mail ou senha incorretos."),
    ("user already registered", "Este e-mail já está cadastrado. Tente fazer login."),
    ("password should be at least", "A senha deve ter pelo menos 6 caracteres."),
    ("email not confirmed", "Verifique seu e-mail para confirmar a conta."),
    ("rate limit", "Muitas tentativas. Aguarde um pouco."),
    ("api key", "Chave de API inválida (Formato incorreto)."),
    ("row-level security", "Permissão negada. Erro na política de segurança do banco de dados."),
    ("policy", "Permissão negada. Erro na política de segurança do banco de dados."),
    ("network", "Erro de Rede: Não foi possível conectar ao servidor. Verifique a URL."),
    ("failed to fetch", "Erro de Rede: Não foi possível conectar ao servidor. Verifique a URL."),
    ("could not connect", "Erro de Rede: Não foi possível conectar ao servidor. Verifique a URL."),
)


def friendly_error_message(error) -> str:
    if error is None:
        return UNKNOWN_ERROR
    if isinstance(error, str):
        return error
    if isinstance(error, NoCredentialsError):
        return "Nenhuma API Key configurada."
    if isinstance(error, ResponseParseError):
        return "A resposta da IA veio em um formato inválido. Tente novamente."
    if isinstance(error, BaseException) and is_retryable(error):
        return RETRY_LATER

    if isinstance(error, BaseException):
        text = str(error)
    else:
        try:
            text = json.dumps(error)
        except (TypeError, ValueError):
            return "Erro interno de conexão."
        if text in ("{}", "[]"):
            return "Erro de Conexão: O servidor recusou a chave fornecida ou a URL está inacessível."

    lowered = text.lower()
    for needle, message in _KNOWN_MESSAGES:
        if needle in lowered:
            return message
    return text or "Erro desconhecido. Tente novamente."
