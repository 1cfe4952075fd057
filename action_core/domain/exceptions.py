"""统一业务异常模型。

所有跨模块抛出的业务级错误都应该继承自 BusinessError，
便于 Orchestrator 统一捕获、写日志，并给用户一个简短的提示。
"""


class BusinessError(Exception):
    """业务异常基类。

    Attributes:
        code: 机器可读错误码（如 "INPUT_EMPTY"）。
        message: 用户可读错误信息。
        http_status: 映射到 HTTP 时可用的状态码，默认 400。
        extra: 其他补充字段（例如 provider、model、session_id 等）。
    """

    default_code = "BUSINESS_ERROR"

    def __init__(self, code: str = "", message: str = "", http_status: int = 400, **extra):
        self.code = code or self.default_code
        self.message = message
        self.http_status = http_status
        self.extra = extra
        super().__init__(message)


# ---- 请求级错误 ----


class InputEmpty(BusinessError):
    """没有选中文本或剪贴板为空。"""

    default_code = "INPUT_EMPTY"


class NoProviderAvailable(BusinessError):
    """override / primary / fallback 都没有命中已注册的 Provider。"""

    default_code = "NO_PROVIDER"


# ---- 本地模型 ----


class ModelFileNotFound(BusinessError):
    """模型路径未配置或文件不存在。"""

    default_code = "MODEL_FILE_NOT_FOUND"


class ModelLoadFailed(BusinessError):
    """分配权重或执行上下文时抛出异常。"""

    default_code = "MODEL_LOAD_FAILED"


class ModelUnavailable(BusinessError):
    """推理时模型未加载，同步加载也失败。"""

    default_code = "MODEL_UNAVAILABLE"


class SessionInvalid(BusinessError):
    """会话不存在、已释放，或其所属模型已经卸载。"""

    default_code = "SESSION_INVALID"


class ContextOverflow(BusinessError):
    """提示词超出剩余上下文窗口。"""

    default_code = "CONTEXT_OVERFLOW"


# ---- 云端 Provider ----


class NetworkError(BusinessError):
    """网络层错误，例如连接失败、超时等。"""


class ApiError(BusinessError):
    """第三方 API 返回非 2xx/429 错误时抛出。"""


class RateLimitError(BusinessError):
    """Provider 限流错误。"""


class ValidationError(BusinessError):
    """参数或配置校验失败。"""


class NoCloudProviderConfigured(BusinessError):
    """云端链路中没有任何启用的配置。"""

    default_code = "NO_CLOUD_PROVIDER"


class AllProvidersFailed(BusinessError):
    """链路中每一个启用的云端配置都失败了。"""

    default_code = "ALL_PROVIDERS_FAILED"


AllCloudProvidersFailed = AllProvidersFailed

# 单次云端尝试失败的统称，CloudProviderChain 会吞掉并继续下一个配置
PartialProviderFailure = (NetworkError, ApiError, RateLimitError, ValidationError)


GENERIC_ERROR_MESSAGE = "An unexpected error occurred. See the log for details."


def user_message(exc: BaseException) -> str:
    """把异常转换为展示给用户的简短文本，不泄露内部细节。"""

    if isinstance(exc, BusinessError) and exc.message:
        return exc.message
    return GENERIC_ERROR_MESSAGE
