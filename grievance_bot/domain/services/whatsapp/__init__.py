"""
WhatsApp Cloud API integration
"""
