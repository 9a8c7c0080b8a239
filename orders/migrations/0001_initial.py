import uuid

import django.db.models.deletion
from django.db import migrations, models


class Migration(migrations.Migration):

    initial = True

    dependencies = []

    operations = [
        migrations.CreateModel(
            name='Order',
            fields=[
                ('id', models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                ('order_number', models.CharField(max_length=16, unique=True)),
                ('user_id', models.CharField(blank=True, db_index=True, max_length=64, null=True)),
                ('customer_name', models.CharField(blank=True, default='', max_length=150)),
                ('customer_email', models.EmailField(blank=True, default='', max_length=254)),
                ('customer_phone', models.CharField(blank=True, default='', max_length=20)),
                ('shipping_address', models.JSONField(blank=True, null=True)),
                ('total_amount', models.DecimalField(decimal_places=2, max_digits=12)),
                ('is_preorder', models.BooleanField(default=False)),
                ('order_status', models.CharField(
                    choices=[
                        ('PENDING', 'Pending'),
                        ('CONFIRMED', 'Confirmed'),
                        ('DISPATCHED', 'Dispatched'),
                        ('DELIVERED', 'Delivered'),
                        ('CANCELLED', 'Cancelled'),
                    ],
                    db_index=True, default='PENDING', max_length=16,
                )),
                ('payment_status', models.CharField(
                    blank=True,
                    choices=[
                        ('INITIATED', 'Initiated'),
                        ('PENDING', 'Pending'),
                        ('PAID', 'Paid'),
                        ('FAILED', 'Failed'),
                    ],
                    db_index=True, max_length=16, null=True,
                )),
                ('payment_reference', models.CharField(blank=True, max_length=128, null=True, unique=True)),
                ('payment_gateway', models.CharField(blank=True, default='', max_length=32)),
                ('estimated_delivery_date', models.DateField(blank=True, null=True)),
                ('created_at', models.DateTimeField(auto_now_add=True)),
                ('updated_at', models.DateTimeField(auto_now=True)),
            ],
            options={
                'ordering': ('-created_at',),
            },
        ),
        migrations.CreateModel(
            name='OrderNumberSequence',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('name', models.CharField(max_length=32, unique=True)),
                ('last_value', models.PositiveBigIntegerField(default=0)),
            ],
        ),
        migrations.CreateModel(
            name='OrderItem',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('product_id', models.CharField(max_length=64)),
                ('variant_id', models.CharField(blank=True, max_length=64, null=True)),
                ('quantity', models.PositiveIntegerField()),
                ('unit_price', models.DecimalField(decimal_places=2, max_digits=12)),
                ('metadata', models.JSONField(blank=True, null=True)),
                ('order', models.ForeignKey(
                    on_delete=django.db.models.deletion.CASCADE, related_name='items', to='orders.order',
                )),
            ],
        ),
        migrations.CreateModel(
            name='OrderEvent',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('status', models.CharField(blank=True, default='', max_length=16)),
                ('type', models.CharField(max_length=32)),
                ('payload', models.JSONField(blank=True, default=dict)),
                ('created_at', models.DateTimeField(auto_now_add=True)),
                ('order', models.ForeignKey(
                    on_delete=django.db.models.deletion.CASCADE, related_name='events', to='orders.order',
                )),
            ],
            options={
                'ordering': ('created_at', 'id'),
            },
        ),
    ]
