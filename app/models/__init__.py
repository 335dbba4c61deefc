from app.models.tenant import Tenant
from app.models.whatsapp_config import WhatsAppConfig
from app.models.agent_config import AgentConfig
from app.models.product import Product
from app.models.conversation import Conversation
from app.models.conversation_message import ConversationMessage
from app.models.order import WhatsAppOrder
