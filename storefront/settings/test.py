from .base import *

DEBUG = False

SECRET_KEY = 'test-secret-key'

DATABASES = {
    'default': {
        'ENGINE': 'django.db.backends.sqlite3',
        'NAME': ':memory:',
    }
}

ALLOWED_HOSTS = ['testserver']

EMAIL_BACKEND = 'django.core.mail.backends.locmem.EmailBackend'

ORDER_EVENT_SINK = 'orders.events.DatabaseEventSink'
ORDERS_PRODUCT_CATALOG = ''

PAYMENT_GATEWAY = 'razorpay'
PAYMENT_WEBHOOK_GATEWAY = 'razorpay'
RAZORPAY_BASE_URL = 'https://api.razorpay.test'
RAZORPAY_KEY_ID = 'rzp_test_key'
RAZORPAY_KEY_SECRET = 'test-key-secret'
PAYMENT_WEBHOOK_SECRET = 'test-webhook-secret'
