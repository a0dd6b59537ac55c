from .client import MailerConfig, Mailer, MailerError

__all__ = ["MailerConfig", "Mailer", "MailerError"]
