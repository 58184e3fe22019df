"""toggle_client ライブラリの例外型定義"""

from __future__ import annotations


class ToggleClientError(Exception):
    """toggle_client ライブラリのエラー基底クラス。"""

    def __init__(
        self,
        code: str,
        message: str,
        cause: Exception | None = None,
    ) -> None:
        super().__init__(message)
        self.code = code
        if cause is not None:
            self.__cause__ = cause

    def __str__(self) -> str:
        return f"{self.code}: {super().__str__()}"


class ToggleClientErrorCodes:
    """ToggleClientError のエラーコード定数。"""

    CONFIG_ERROR: str = "CONFIG_ERROR"
    TRANSPORT_ERROR: str = "TRANSPORT_ERROR"
    PARSE_ERROR: str = "PARSE_ERROR"
    PERSISTENCE_ERROR: str = "PERSISTENCE_ERROR"


class ConfigurationError(ToggleClientError):
    """構築時の設定不備。呼び出し元まで伝播する唯一のエラー。"""

    def __init__(self, message: str, cause: Exception | None = None) -> None:
        super().__init__(ToggleClientErrorCodes.CONFIG_ERROR, message, cause)


class TransportError(ToggleClientError):
    """トグル定義取得時の通信エラー。前回のスナップショットを維持する。"""

    def __init__(
        self,
        message: str,
        cause: Exception | None = None,
        status_code: int | None = None,
    ) -> None:
        super().__init__(ToggleClientErrorCodes.TRANSPORT_ERROR, message, cause)
        self.status_code = status_code


class ParseError(ToggleClientError):
    """レスポンスやファイルの解析エラー。"""

    def __init__(self, message: str, cause: Exception | None = None) -> None:
        super().__init__(ToggleClientErrorCodes.PARSE_ERROR, message, cause)


class PersistenceError(ToggleClientError):
    """スナップショットの永続化エラー。警告扱い。"""

    def __init__(self, message: str, cause: Exception | None = None) -> None:
        super().__init__(ToggleClientErrorCodes.PERSISTENCE_ERROR, message, cause)
