"""
Conversation state machine for WhatsApp grievance intake
"""
