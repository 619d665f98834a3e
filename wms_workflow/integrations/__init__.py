"""wms_workflow.integrations: collaborator gateway modules.

The engine never reaches into document tables or the network directly; it
goes through a gateway in this package.

Current gateways:
  document_gateway.DocumentGateway - read/write document status
  webhook_gateway.WebhookGateway - outbound HTTP POST for the webhook action
"""
