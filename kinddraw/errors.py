class KindDrawError(Exception):
    status_code = 500


class ConfigurationError(KindDrawError):
    """A required secret or connection setting is missing."""

    status_code = 500


class InvalidInput(KindDrawError):
    status_code = 400


class SignatureInvalid(KindDrawError):
    """Webhook payload failed Stripe signature verification."""

    status_code = 400


class PersistenceError(KindDrawError):
    """The database rejected or could not complete a write."""

    status_code = 500
