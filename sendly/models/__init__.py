from sendly.models.shop import Shop
from sendly.models.wallet import WalletTransaction
from sendly.models.billing import BillingTransaction
from sendly.models.contact import Contact, Segment, SegmentMembership
from sendly.models.campaign import Campaign, CampaignMetrics, CampaignRecipient
from sendly.models.message_log import MessageLog
from sendly.models.queue_job import QueueJob
