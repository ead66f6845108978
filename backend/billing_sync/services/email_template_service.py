"""
Email Template Service for rendering Jinja2 email templates.

WHAT: Service for loading and rendering billing email templates using Jinja2.

WHY: Template-based emails provide:
- Consistent branding across all email types
- Easy content updates without code changes
- Template inheritance (every email extends base.html)

HOW: Uses Jinja2 environment with FileSystemLoader to load templates
from the package's templates/email directory. Provides one render method
per billing email, each returning (subject, html, text).
"""

import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional

from jinja2 import Environment, FileSystemLoader, TemplateError, TemplateNotFound, select_autoescape

from billing_sync.core.exceptions import EmailServiceError

logger = logging.getLogger(__name__)

DEFAULT_TEMPLATE_DIR = Path(__file__).parent.parent / "templates" / "email"


class EmailTemplateService:
    """
    Service for rendering email templates.

    WHAT: Loads and renders Jinja2 templates for billing emails.

    WHY: Centralizes template rendering:
    - Single point for template configuration
    - Error handling for missing templates
    - Default variable injection (branding, links)

    Example:
        template_service = EmailTemplateService(frontend_url="https://app.example.com")
        subject, html, text = template_service.render_payment_failed_email(
            plan_name="Pro",
            amount="29.00 USD",
        )
    """

    def __init__(
        self,
        frontend_url: str,
        platform_name: str = "Billing",
        template_dir: Optional[Path] = None,
    ):
        """
        Initialize template service.

        Args:
            frontend_url: Base URL for links in emails
            platform_name: Product name shown in headers and footers
            template_dir: Path to templates directory (defaults to the packaged templates)
        """
        self._frontend_url = frontend_url.rstrip("/")
        self._platform_name = platform_name
        self._template_dir = template_dir or DEFAULT_TEMPLATE_DIR
        self._env = self._create_environment()

    def _create_environment(self) -> Environment:
        """
        Create Jinja2 environment with proper configuration.

        WHY: Auto-escaping prevents metadata that ends up in a template
        from injecting markup.

        Returns:
            Configured Jinja2 Environment
        """
        return Environment(
            loader=FileSystemLoader(str(self._template_dir)),
            autoescape=select_autoescape(["html", "xml"]),
            trim_blocks=True,
            lstrip_blocks=True,
        )

    @property
    def billing_url(self) -> str:
        return f"{self._frontend_url}/billing"

    def _get_base_context(self) -> Dict[str, Any]:
        """
        Get base context variables for all templates.

        Returns:
            Dict with base context variables
        """
        return {
            "year": datetime.now(timezone.utc).year,
            "frontend_url": self._frontend_url,
            "billing_url": self.billing_url,
            "platform_name": self._platform_name,
        }

    def render_template(
        self,
        template_name: str,
        context: Dict[str, Any],
    ) -> str:
        """
        Render a template with given context.

        HOW: Merges base context, loads template, renders with context.

        Args:
            template_name: Name of template file (e.g., "payment_failed.html")
            context: Template variables

        Returns:
            Rendered HTML string

        Raises:
            EmailServiceError: If template not found or render fails
        """
        try:
            template = self._env.get_template(template_name)
            full_context = {**self._get_base_context(), **context}
            return template.render(**full_context)
        except TemplateNotFound:
            logger.error(f"Email template not found: {template_name}")
            raise EmailServiceError(
                message=f"Email template not found: {template_name}",
                template=template_name,
            )
        except TemplateError as e:
            logger.error(f"Error rendering template {template_name}: {e}")
            raise EmailServiceError(
                message="Failed to render email template",
                template=template_name,
                error=str(e),
            )

    def render_welcome_to_plan_email(
        self,
        plan_name: str,
        current_period_end: Optional[str] = None,
    ) -> tuple[str, str, str]:
        """
        Render the welcome email sent after a successful checkout.

        Args:
            plan_name: Display name of the purchased plan
            current_period_end: End of the first billing period (formatted)

        Returns:
            Tuple of (subject, html_content, text_content)
        """
        context = {
            "plan_name": plan_name,
            "current_period_end": current_period_end,
        }

        html = self.render_template("welcome_to_plan.html", context)
        text = self._generate_text_version(
            f"Welcome to {plan_name}!\n\n"
            f"Your subscription is active.\n"
            + (f"Your first billing period ends on {current_period_end}.\n" if current_period_end else "")
            + f"\nManage your subscription: {self.billing_url}"
        )

        return f"Welcome to {self._platform_name} {plan_name}", html, text

    def render_payment_succeeded_email(
        self,
        plan_name: str,
        amount: str,
        current_period_end: Optional[str] = None,
        invoice_url: Optional[str] = None,
    ) -> tuple[str, str, str]:
        """
        Render a renewal receipt.

        Args:
            plan_name: Display name of the plan
            amount: Amount paid (formatted with currency)
            current_period_end: End of the period just paid for (formatted)
            invoice_url: Hosted invoice URL

        Returns:
            Tuple of (subject, html_content, text_content)
        """
        context = {
            "plan_name": plan_name,
            "amount": amount,
            "current_period_end": current_period_end,
            "invoice_url": invoice_url,
        }

        html = self.render_template("payment_succeeded.html", context)
        text = self._generate_text_version(
            f"Thank you for your payment!\n\n"
            f"Plan: {plan_name}\n"
            f"Amount: {amount}\n"
            + (f"Paid through: {current_period_end}\n" if current_period_end else "")
            + (f"\nView invoice: {invoice_url}" if invoice_url else "")
        )

        return f"Payment received: {amount}", html, text

    def render_payment_failed_email(
        self,
        plan_name: str,
        amount: str,
        next_payment_attempt: Optional[str] = None,
        invoice_url: Optional[str] = None,
    ) -> tuple[str, str, str]:
        """
        Render the dunning email sent when a payment fails.

        Args:
            plan_name: Display name of the plan
            amount: Amount due (formatted with currency)
            next_payment_attempt: When the card will be retried (formatted)
            invoice_url: Hosted invoice URL where the user can pay

        Returns:
            Tuple of (subject, html_content, text_content)
        """
        context = {
            "plan_name": plan_name,
            "amount": amount,
            "next_payment_attempt": next_payment_attempt,
            "invoice_url": invoice_url,
        }

        html = self.render_template("payment_failed.html", context)
        text = self._generate_text_version(
            f"We couldn't process your payment of {amount} for {plan_name}.\n\n"
            + (f"We'll try again on {next_payment_attempt}.\n" if next_payment_attempt else "")
            + f"Please update your payment method: {invoice_url or self.billing_url}"
        )

        return "Action required: your payment failed", html, text

    def render_subscription_canceled_email(
        self,
        plan_name: str,
        canceled_at: Optional[str] = None,
    ) -> tuple[str, str, str]:
        """
        Render the cancellation confirmation.

        Args:
            plan_name: Display name of the canceled plan
            canceled_at: When the subscription ended (formatted)

        Returns:
            Tuple of (subject, html_content, text_content)
        """
        context = {
            "plan_name": plan_name,
            "canceled_at": canceled_at,
        }

        html = self.render_template("subscription_canceled.html", context)
        text = self._generate_text_version(
            f"Your {plan_name} subscription has been canceled"
            + (f" as of {canceled_at}" if canceled_at else "")
            + ".\n\n"
            f"You can subscribe again at any time: {self.billing_url}"
        )

        return f"Your {plan_name} subscription has been canceled", html, text

    def _generate_text_version(self, content: str) -> str:
        """
        Generate plain text email version.

        WHY: Some email clients don't support HTML or users prefer text.

        Args:
            content: Text content

        Returns:
            Formatted plain text email
        """
        footer = (
            "\n\n---\n"
            f"{self._platform_name}\n"
            "You are receiving this email because of activity on your subscription."
        )
        return content.strip() + footer
