from pydantic import BaseModel, EmailStr, Field, field_validator
from email_utils import EmailSender, EmailConfig, MailSendError, create_otp_email
from otp_utils import OTPStore, StoreConfig, StorageError
from fastapi import FastAPI, Depends, HTTPException, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from dotenv import load_dotenv
import logging
from typing import Optional, Dict, Any, Union
from datetime import datetime
import os

# Configure logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

load_dotenv()

app = FastAPI(
    title="OTP Email Verification API",
    description="Issue one-time passcodes by email and verify them",
    version="1.0.0",
)

# CORS Configuration
origins = [
    origin.strip()
    for origin in os.getenv("CORS_ORIGINS", "*").split(",")
    if origin.strip()
]

app.add_middleware(
    CORSMiddleware,
    allow_origins=origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# --- Configuration ---
store_config = StoreConfig(
    storage_dir=os.getenv("OTP_STORAGE_DIR", "otp_storage"),
    verification_window=int(os.getenv("OTP_VERIFICATION_WINDOW", 300)),
)

email_config = EmailConfig(
    smtp_server=os.getenv("SMTP_SERVER", "smtp.gmail.com"),
    smtp_port=int(os.getenv("SMTP_PORT", 587)),
    timeout=30,
    max_retries=2,
    retry_delay=1,
    sender_name=os.getenv("MAIL_SENDER_NAME", "OTP Verification"),
)

DEBUG_ENDPOINTS = os.getenv("OTP_DEBUG_ENDPOINTS", "false").lower() in ("1", "true", "yes")

OTP_EMAIL_SUBJECT = "OTP Verification"

_otp_store: Optional[OTPStore] = None
_email_sender: Optional[EmailSender] = None


# --- Pydantic Models ---
class SendOTPRequest(BaseModel):
    email: Optional[EmailStr] = None

    @field_validator("email", mode="before")
    @classmethod
    def blank_to_none(cls, v):
        if isinstance(v, str) and not v.strip():
            return None
        return v


class VerifyOTPRequest(BaseModel):
    email: Optional[EmailStr] = None
    # Clients send the code either as a JSON string or a number
    otp: Optional[Union[str, int]] = None

    @field_validator("email", "otp", mode="before")
    @classmethod
    def blank_to_none(cls, v):
        if isinstance(v, str) and not v.strip():
            return None
        return v


class APIResponse(BaseModel):
    success: bool
    message: str
    data: Optional[Dict[str, Any]] = None
    timestamp: str = Field(default_factory=lambda: datetime.now().isoformat())


# --- Dependencies ---
def get_otp_store() -> OTPStore:
    global _otp_store
    if _otp_store is None:
        _otp_store = OTPStore(store_config)
    return _otp_store


def get_email_sender() -> EmailSender:
    global _email_sender
    if _email_sender is None:
        try:
            _email_sender = EmailSender(email_config)
        except ValueError as e:
            logger.error(f"❌ Email configuration error: {e}")
            raise HTTPException(
                status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
                detail="Email configuration not properly set. Check EMAIL_USER and EMAIL_PASS environment variables.",
            )
    return _email_sender


def mask_otp(otp: str) -> str:
    return "***" + otp[-3:]


# --- API Endpoints ---
@app.get("/", response_model=APIResponse)
async def root():
    """Health check endpoint"""
    return APIResponse(
        success=True,
        message="OTP API is running",
        data={
            "version": app.version,
            "verification_window_seconds": store_config.verification_window,
        },
    )


@app.post("/send-otp", response_model=APIResponse)
def send_otp(
    data: SendOTPRequest,
    store: OTPStore = Depends(get_otp_store),
    sender: EmailSender = Depends(get_email_sender),
):
    """Generate an OTP, store it, and email it to the requester"""
    if not data.email:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST, detail="Email is required"
        )

    email = str(data.email)
    otp = store.generate_code()

    try:
        store.issue(email, otp)
    except StorageError as e:
        logger.error(f"❌ Error storing OTP for {email}: {e}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to store OTP",
        )

    # The OTP stays stored even if delivery fails
    valid_minutes = max(1, store.config.verification_window // 60)
    try:
        sender.send(
            to=email,
            subject=OTP_EMAIL_SUBJECT,
            body=create_otp_email(otp, valid_minutes),
            is_html=True,
        )
    except MailSendError as e:
        logger.error(f"Error sending OTP email to {email}: {e}")
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content=APIResponse(
                success=False, message="Error sending email", data={"error": str(e)}
            ).model_dump(),
        )

    return APIResponse(success=True, message="OTP sent successfully")


@app.post("/verify-otp", response_model=APIResponse)
def verify_otp(data: VerifyOTPRequest, store: OTPStore = Depends(get_otp_store)):
    """Verify an OTP and consume it on success"""
    # A numeric 0 counts as missing, like an empty string
    if not data.email or not data.otp:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Email and OTP are required",
        )

    email = str(data.email)
    try:
        verified = store.consume(email, str(data.otp))
    except StorageError as e:
        logger.error(f"❌ Error consuming OTP for {email}: {e}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to consume OTP",
        )

    if not verified:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid OTP"
        )

    return APIResponse(success=True, message="OTP verified successfully")


@app.get("/otp/debug", response_model=APIResponse)
def debug_info(store: OTPStore = Depends(get_otp_store)):
    """Live OTPs with masked codes (debugging only)"""
    if not DEBUG_ENDPOINTS:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Not Found")

    try:
        current = store.list_all()
    except StorageError as e:
        logger.error(f"❌ Error listing OTPs: {e}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to read OTP store",
        )

    return APIResponse(
        success=True,
        message="Debug information",
        data={
            "otp_store_count": len(current),
            "current_otps": {email: mask_otp(otp) for email, otp in current.items()},
        },
    )


# --- Exception Handlers ---
@app.exception_handler(HTTPException)
async def http_exception_handler(request, exc):
    return JSONResponse(
        status_code=exc.status_code,
        content=APIResponse(success=False, message=exc.detail).model_dump(),
    )


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request, exc):
    errors = "; ".join(
        f"{'.'.join(str(part) for part in err['loc'] if part != 'body')}: {err['msg']}"
        for err in exc.errors()
    )
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content=APIResponse(success=False, message=f"Invalid request: {errors}").model_dump(),
    )


@app.exception_handler(Exception)
async def general_exception_handler(request, exc):
    logger.error(f"Unhandled exception: {exc}")
    return JSONResponse(
        status_code=500,
        content=APIResponse(success=False, message="Internal server error").model_dump(),
    )


@app.on_event("startup")
async def startup_event():
    logger.info(
        f"🚀 OTP API starting up (storage: {store_config.storage_dir}, "
        f"window: {store_config.verification_window}s)"
    )


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "main:app",
        host=os.getenv("HOST", "0.0.0.0"),
        port=int(os.getenv("PORT", 8000)),
        log_level="info",
    )
