"""Payment-event settlement service for the fan-club storefront"""
