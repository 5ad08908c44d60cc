"""
Market Intel - Pydantic Schema Models

Organized by domain for use across routers.
"""

from schemas.auth import (  # noqa: F401
    UserResponse,
    RegisterRequest,
    ChangePasswordRequest,
    RefreshRequest,
    LogoutRequest,
    UserCreateRequest,
    SuspendRequest,
    RoleUpdateRequest,
)
from schemas.prompts import (  # noqa: F401
    SystemPromptBase,
    SystemPromptCreate,
    SystemPromptResponse,
)
from schemas.analyses import (  # noqa: F401
    AnalysisOptions,
    AnalysisCreate,
    UserCompany,
    ThreatLevelRequest,
)
from schemas.api_keys import (  # noqa: F401
    ApiKeySave,
    ApiKeyValidateRequest,
)
from schemas.documents import DocumentUpdate  # noqa: F401
from schemas.preferences import PreferencesUpdate  # noqa: F401
from schemas.billing import (  # noqa: F401
    CostLimitUpdate,
    CostCheckRequest,
    BillingRecordCreate,
)
from schemas.support import (  # noqa: F401
    TicketCreate,
    TicketUpdate,
    TicketMessageCreate,
)
from schemas.rate_limit import RateLimitCheckRequest  # noqa: F401
