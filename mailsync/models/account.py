from pydantic import BaseModel, SecretStr


class Account(BaseModel):
    """A mailbox account; the id scopes every cached entity."""

    id: str
    email: str
    imap_host: str = ""
    imap_port: int = 993
    smtp_host: str = ""
    smtp_port: int = 465
    password: SecretStr = SecretStr("")
