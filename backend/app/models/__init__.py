from app.models.church import Church
from app.models.subscription import ChurchSubscription, PricingTier
from app.models.payment import PaymentIntent, PaymentWebhookEvent
from app.models.tier_change import TierChangeHistory
from app.models.job_execution import ScheduledJobExecution
from app.models.addon import ChurchStorageAddon, StorageAddon
from app.models.sms_credit import ChurchSmsCredit, SmsCreditPurchase
from app.models.partnership_code import PartnershipCode, PartnershipCodeUsage
from app.models.audit_log import AuditLog
