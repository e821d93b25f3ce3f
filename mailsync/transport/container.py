from dependency_injector import containers, providers

from mailsync.transport.imap.connection import ConnectionManager
from mailsync.transport.imap.transport import ImapTransport
from mailsync.transport.smtp.smtp_sender import SMTPSender


class TransportContainer(containers.DeclarativeContainer):
    imap_connection_manager = providers.Singleton(ConnectionManager)
    smtp_sender = providers.Singleton(SMTPSender)
    imap_transport = providers.Singleton(
        ImapTransport, connection_manager=imap_connection_manager, smtp_sender=smtp_sender
    )
