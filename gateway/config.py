"""Application configuration via environment variables.

Nested sections use ``__`` as delimiter, e.g. ``COBALT__BASE_URL`` or
``COBALT__COMPANIES='{"2": {"client_id": "...", "client_secret": "..."}}'``.
Company catalogs and ACH instructions are JSON too, e.g.
``HANSA__COMPANIES='[{"comp_code": "2", "payment_methods": {"paypal": {"enabled": true}}}]'``.
"""

from typing import Optional

from pydantic import BaseModel
from pydantic_settings import BaseSettings


class ClientCredentials(BaseModel):
    client_id: str
    client_secret: str


class CobaltSettings(BaseModel):
    base_url: str = ""
    token_endpoint: str = "/oauth/token"
    sale_endpoint: str = "/api/sale"
    companies: dict[str, ClientCredentials] = {}

    @property
    def token_url(self) -> str:
        return self.base_url + self.token_endpoint

    @property
    def sale_url(self) -> str:
        return self.base_url + self.sale_endpoint


class PayPalSettings(BaseModel):
    base_url: str = "https://api-m.sandbox.paypal.com"
    mode: str = "sandbox"  # sandbox | live
    token_endpoint: str = "/v1/oauth2/token"
    orders_endpoint: str = "/v2/checkout/orders"
    capture_endpoint: str = "/v2/checkout/orders/{order_id}/capture"
    brand_name: str = "Celero Network"
    companies: dict[str, ClientCredentials] = {}

    @property
    def token_url(self) -> str:
        return self.base_url + self.token_endpoint

    @property
    def orders_url(self) -> str:
        return self.base_url + self.orders_endpoint

    def order_url(self, order_id: str) -> str:
        return f"{self.orders_url}/{order_id}"

    def capture_url(self, order_id: str) -> str:
        return self.base_url + self.capture_endpoint.replace("{order_id}", order_id)


class YappyMerchant(BaseModel):
    merchant_id: str
    secret_key: str = ""  # base64 secret used to sign IPN callbacks


class YappySettings(BaseModel):
    base_url: str = ""
    validate_merchant_endpoint: str = "/payments/validate/merchant"
    create_order_endpoint: str = "/payments/payment-wc"
    domain: str = "https://selfservice-dev.celero.network"
    companies: dict[str, YappyMerchant] = {}

    @property
    def validate_merchant_url(self) -> str:
        return self.base_url + self.validate_merchant_endpoint

    @property
    def create_order_url(self) -> str:
        return self.base_url + self.create_order_endpoint


class MethodAvailability(BaseModel):
    enabled: bool = False
    display_name: str = ""


class CompanyPaymentMethods(BaseModel):
    credit_card: MethodAvailability = MethodAvailability(display_name="Tarjeta de Crédito")
    yappy: MethodAvailability = MethodAvailability(display_name="Yappy")
    ach: MethodAvailability = MethodAvailability(display_name="ACH")
    paypal: MethodAvailability = MethodAvailability(display_name="PayPal")


class HansaCompany(BaseModel):
    """One ERP company offered to customers, with the methods it accepts."""

    comp_code: str
    comp_name: str = ""
    short_name: str = ""
    active_status: str = "Activo"
    payment_methods: CompanyPaymentMethods = CompanyPaymentMethods()

    @property
    def is_active(self) -> bool:
        return self.active_status == "Activo"


class HansaSettings(BaseModel):
    base_url: str = "http://localhost"
    web_port: int = 8080
    company_code: str = "2"
    username: str = ""
    password: str = ""
    use_basic_auth: bool = True
    companies: list[HansaCompany] = []

    def company(self, comp_code: str) -> Optional[HansaCompany]:
        return next((c for c in self.companies if c.comp_code == comp_code), None)

    @property
    def full_base_url(self) -> str:
        return f"{self.base_url}:{self.web_port}"

    def register_url(self, company_code: str, register: str) -> str:
        return f"{self.full_base_url}/api/{company_code}/{register}"


class RecaptchaSettings(BaseModel):
    enabled: bool = False
    base_url: str = "https://recaptchaenterprise.googleapis.com"
    project_id: str = ""
    api_key: str = ""
    site_key: str = ""
    min_score: float = 0.5

    @property
    def assessment_url(self) -> str:
        return f"{self.base_url}/v1/projects/{self.project_id}/assessments"


class EmailSettings(BaseModel):
    api_url: str = "https://api.resend.com/emails"
    api_key: str = ""
    default_from: str = "noreply@celero.net"
    default_from_name: str = "Celero"


class BankAccount(BaseModel):
    beneficiary: str
    bank: str
    account_number: str
    account_type: str = "Cuenta Corriente"


class ACHInstructions(BaseModel):
    """What a customer is told before uploading an ACH transfer proof."""

    title: str = "Instrucciones para pago ACH:"
    steps: list[str] = [
        "Realice la transferencia ACH a la cuenta bancaria de Celero",
        "Tome una captura o foto del comprobante de transferencia",
        "Complete los datos de la transacción arriba",
        "Suba el comprobante usando el botón de arriba",
        "Confirme el pago para completar el proceso",
    ]
    bank_details_title: str = "Datos bancarios:"
    banks: list[BankAccount] = [
        BankAccount(
            beneficiary="CELERO S.A.",
            bank="Banco General",
            account_number="03-01-01-123456-7",
        )
    ]


class Settings(BaseSettings):
    database_url: str = "sqlite+aiosqlite:///./payment_gateway.db"
    log_level: str = "INFO"

    app_base_url: str = "https://selfservice-dev.celero.network"
    api_base_url: str = "https://localhost:7262"

    provider_timeout_seconds: float = 30.0
    erp_timeout_seconds: float = 30.0
    token_expiry_skew_seconds: int = 60  # Treat tokens as expired this early

    verification_code_ttl_minutes: int = 2
    verification_code_length: int = 4
    verification_retention_hours: int = 24
    verification_grant_minutes: int = 30

    ach_max_upload_bytes: int = 5 * 1024 * 1024
    # Per company code; companies without an entry get the defaults
    ach_instructions: dict[str, ACHInstructions] = {}

    cobalt: CobaltSettings = CobaltSettings()
    paypal: PayPalSettings = PayPalSettings()
    yappy: YappySettings = YappySettings()
    hansa: HansaSettings = HansaSettings()
    recaptcha: RecaptchaSettings = RecaptchaSettings()
    email: EmailSettings = EmailSettings()

    model_config = {
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "env_nested_delimiter": "__",
    }

    @property
    def yappy_ipn_url(self) -> str:
        return f"{self.api_base_url}/api/payments/yappy/ipn"

    def ach_instructions_for(self, company_code: str) -> ACHInstructions:
        return self.ach_instructions.get(company_code) or ACHInstructions()


settings = Settings()
