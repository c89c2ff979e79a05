import logging
from typing import AsyncIterable

from dishka import Provider, provide, Scope
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from murmur.config import AppConfig

from murmur.adapters.api.dao import AbstractTransport, CommonHTTPClient, TimeHTTPDAO, WebSocketDAO

from murmur.adapters.database.dao import (
    AbstractCommonDAO, CommonDAO,
    AbstractAccountDAO, AccountDAO,
    AbstractFriendDAO, FriendDAO,
    AbstractConversationDAO, ConversationDAO,
    AbstractMessageDAO, MessageDAO,
)
from murmur.adapters.database.engine import create_engine, create_sessionmaker
from murmur.adapters.database.migrations import run_migrations
from murmur.adapters.database.service import AccountService, FriendService, MessageStoreService

from murmur.adapters.encryption.dao import (
    Abstract256Cipher, AES256GCMCipher,
    AbstractKeyAgreement, X25519KeyAgreement,
    AbstractKDF, CryptographyKDF,
)
from murmur.adapters.encryption.service import EncryptionService, KeyManager

from murmur.services.call import CallSession
from murmur.services.clock import ClockService
from murmur.services.messenger import MessengerService, make_signal_sender
from murmur.state import SessionState


class AppProvider(Provider):
    def __init__(self, config: AppConfig, logger: logging.Logger, scope: Scope = Scope.APP):
        super().__init__(scope=scope)
        self.config = config
        self.logger = logger

    # --- process-wide state --- #

    @provide(scope=Scope.APP)
    def session_state(self) -> SessionState:
        return SessionState()

    @provide(scope=Scope.APP)
    def clock(self) -> ClockService:
        return ClockService(drift_threshold_ms=self.config.drift_threshold_ms, logger=self.logger)

    # --- encryption and key management --- #

    @provide(scope=Scope.REQUEST)
    def aes_cipher(self) -> Abstract256Cipher:
        return AES256GCMCipher()

    @provide(scope=Scope.REQUEST)
    def key_agreement(self) -> AbstractKeyAgreement:
        return X25519KeyAgreement()

    @provide(scope=Scope.REQUEST)
    def kdf(self) -> AbstractKDF:
        return CryptographyKDF()

    @provide(scope=Scope.REQUEST)
    def key_manager(self, kdf: AbstractKDF) -> KeyManager:
        return KeyManager(kdf=kdf, logger=self.logger)

    @provide(scope=Scope.REQUEST)
    def encryption_service(
            self,
            aes_cipher: Abstract256Cipher,
            key_agreement: AbstractKeyAgreement
    ) -> EncryptionService:
        return EncryptionService(aes_cipher=aes_cipher, key_agreement=key_agreement, logger=self.logger)

    # --- http and websocket api --- #

    @provide(scope=Scope.APP)
    async def api_client(self) -> AsyncIterable[CommonHTTPClient]:
        async with CommonHTTPClient(
            base_url=self.config.base_url,
            timeout=self.config.http_timeout,
            max_retries=self.config.http_max_retries,
            retry_delay=self.config.http_retry_delay,
            verify=self.config.verify_ssl,
            logger=self.logger
        ) as client:
            yield client

    @provide(scope=Scope.REQUEST)
    def time_dao(self, http_client: CommonHTTPClient) -> TimeHTTPDAO:
        return TimeHTTPDAO(http_client=http_client)

    @provide(scope=Scope.APP)
    async def websocket_dao(self) -> AsyncIterable[WebSocketDAO]:
        websocket = WebSocketDAO(
            base_ws_url=self.config.base_ws_url,
            logger=self.logger,
            verify=self.config.verify_ssl
        )
        yield websocket
        await websocket.disconnect()

    @provide(scope=Scope.APP)
    def transport(self, websocket: WebSocketDAO) -> AbstractTransport:
        return websocket

    @provide(scope=Scope.APP)
    def call_session(
            self,
            transport: AbstractTransport,
            state: SessionState,
            clock: ClockService
    ) -> CallSession:
        return CallSession(
            send_signal=make_signal_sender(transport, state),
            clock=clock,
            timeout=self.config.call_timeout,
            logger=self.logger
        )

    # --- database --- #

    @provide(scope=Scope.APP)
    async def engine(self) -> AsyncIterable[AsyncEngine]:
        engine = create_engine(self.config.database_url)
        try:
            version = await run_migrations(engine, logger=self.logger)
        except Exception as e:
            self.logger.error(f"Failed to prepare database: {e}")
            await engine.dispose()
            raise
        self.logger.info(f"Database ready at schema version {version}")
        yield engine
        await engine.dispose()

    @provide(scope=Scope.APP)
    def sessionmaker(self, engine: AsyncEngine) -> async_sessionmaker:
        return create_sessionmaker(engine)

    @provide(scope=Scope.REQUEST)
    async def new_connection(self, sessionmaker: async_sessionmaker) -> AsyncIterable[AsyncSession]:
        async with sessionmaker() as session:
            yield session

    @provide(scope=Scope.REQUEST)
    def common_dao(self, session: AsyncSession) -> AbstractCommonDAO:
        return CommonDAO(session=session)

    @provide(scope=Scope.REQUEST)
    def account_dao(self, session: AsyncSession) -> AbstractAccountDAO:
        return AccountDAO(session=session)

    @provide(scope=Scope.REQUEST)
    def friend_dao(self, session: AsyncSession) -> AbstractFriendDAO:
        return FriendDAO(session=session)

    @provide(scope=Scope.REQUEST)
    def conversation_dao(self, session: AsyncSession) -> AbstractConversationDAO:
        return ConversationDAO(session=session)

    @provide(scope=Scope.REQUEST)
    def message_dao(self, session: AsyncSession) -> AbstractMessageDAO:
        return MessageDAO(session=session)

    # --- services --- #

    @provide(scope=Scope.REQUEST)
    def account_service(
            self,
            account_dao: AbstractAccountDAO,
            common_dao: AbstractCommonDAO,
            key_manager: KeyManager,
            encryption_service: EncryptionService,
            clock: ClockService,
            state: SessionState
    ) -> AccountService:
        return AccountService(
            account_dao=account_dao,
            common_dao=common_dao,
            key_manager=key_manager,
            encryption_service=encryption_service,
            clock=clock,
            state=state,
            default_kdf_params=self.config.kdf_params(),
            logger=self.logger
        )

    @provide(scope=Scope.REQUEST)
    def friend_service(
            self,
            friend_dao: AbstractFriendDAO,
            common_dao: AbstractCommonDAO,
            account_service: AccountService,
            encryption_service: EncryptionService,
            state: SessionState
    ) -> FriendService:
        return FriendService(
            friend_dao=friend_dao,
            common_dao=common_dao,
            account_service=account_service,
            encryption_service=encryption_service,
            state=state,
            logger=self.logger
        )

    @provide(scope=Scope.REQUEST)
    def message_store(
            self,
            message_dao: AbstractMessageDAO,
            conversation_dao: AbstractConversationDAO,
            common_dao: AbstractCommonDAO,
            friend_service: FriendService,
            encryption_service: EncryptionService,
            clock: ClockService,
            state: SessionState
    ) -> MessageStoreService:
        return MessageStoreService(
            message_dao=message_dao,
            conversation_dao=conversation_dao,
            common_dao=common_dao,
            friend_service=friend_service,
            encryption_service=encryption_service,
            clock=clock,
            state=state,
            logger=self.logger
        )

    @provide(scope=Scope.REQUEST)
    def messenger(
            self,
            account_service: AccountService,
            friend_service: FriendService,
            message_store: MessageStoreService,
            encryption_service: EncryptionService,
            clock: ClockService,
            call_session: CallSession,
            transport: AbstractTransport,
            state: SessionState
    ) -> MessengerService:
        return MessengerService(
            account_service=account_service,
            friend_service=friend_service,
            message_store=message_store,
            encryption_service=encryption_service,
            clock=clock,
            call_session=call_session,
            transport=transport,
            state=state,
            logger=self.logger
        )
