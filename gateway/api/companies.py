"""
Company catalog endpoints.

GET /companies                         Active companies, flagging the default one.
GET /companies/payment-methods         Active companies with their payment methods.
GET /companies/{code}/payment-methods  Methods one company accepts.
GET /companies/{code}/ach-instructions Bank details and steps for ACH transfers.
"""

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel

from gateway.api.deps import GatewayServices, get_services
from gateway.config import ACHInstructions, CompanyPaymentMethods, HansaCompany, MethodAvailability

router = APIRouter(prefix="/companies", tags=["companies"])


class CompanyOut(BaseModel):
    comp_code: str
    comp_name: str
    short_name: str
    is_active: bool
    is_default: bool


class CompanyMethodsOut(BaseModel):
    comp_code: str
    comp_name: str
    short_name: str
    is_active: bool
    payment_methods: CompanyPaymentMethods


def _disabled(methods: CompanyPaymentMethods) -> CompanyPaymentMethods:
    return CompanyPaymentMethods(
        **{
            name: MethodAvailability(enabled=False, display_name=method.display_name)
            for name, method in methods
        }
    )


def _methods_out(company: HansaCompany) -> CompanyMethodsOut:
    methods = company.payment_methods if company.is_active else _disabled(company.payment_methods)
    return CompanyMethodsOut(
        comp_code=company.comp_code,
        comp_name=company.comp_name,
        short_name=company.short_name,
        is_active=company.is_active,
        payment_methods=methods,
    )


def _active(services: GatewayServices) -> list[HansaCompany]:
    return sorted((c for c in services.settings.hansa.companies if c.is_active), key=lambda c: c.comp_code)


@router.get("", response_model=list[CompanyOut])
async def list_companies(services: GatewayServices = Depends(get_services)):
    default = services.settings.hansa.company_code
    return [
        CompanyOut(
            comp_code=c.comp_code,
            comp_name=c.comp_name,
            short_name=c.short_name,
            is_active=True,
            is_default=c.comp_code == default,
        )
        for c in _active(services)
    ]


@router.get("/payment-methods", response_model=list[CompanyMethodsOut])
async def list_payment_methods(services: GatewayServices = Depends(get_services)):
    return [_methods_out(c) for c in _active(services)]


@router.get("/{comp_code}/payment-methods", response_model=CompanyMethodsOut)
async def company_payment_methods(comp_code: str, services: GatewayServices = Depends(get_services)):
    company = services.settings.hansa.company(comp_code)
    if company is None:
        raise HTTPException(status_code=404, detail=f"Company {comp_code} not found")
    return _methods_out(company)


@router.get("/{comp_code}/ach-instructions", response_model=ACHInstructions)
async def ach_instructions(comp_code: str, services: GatewayServices = Depends(get_services)):
    return services.settings.ach_instructions_for(comp_code)
