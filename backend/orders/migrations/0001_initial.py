from django.db import migrations, models


class Migration(migrations.Migration):

    initial = True

    dependencies = []

    operations = [
        migrations.CreateModel(
            name='DispatchAttemptLog',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('order_id', models.CharField(db_index=True, max_length=64)),
                ('radius_km', models.FloatField()),
                ('candidate_count', models.PositiveIntegerField(default=0)),
                ('outcome', models.CharField(choices=[('matched', 'Matched'), ('exhausted', 'Exhausted')], max_length=20)),
                ('elapsed_seconds', models.FloatField(default=0.0)),
                ('attempt_count', models.PositiveIntegerField(default=1)),
                ('radii_km', models.JSONField(blank=True, default=list)),
                ('driver_id', models.CharField(blank=True, max_length=64, null=True)),
                ('reservation_failures', models.PositiveIntegerField(default=0)),
                ('created_at', models.DateTimeField(auto_now_add=True)),
            ],
            options={
                'db_table': 'dispatch_attempts',
                'ordering': ['-created_at', '-id'],
            },
        ),
        migrations.CreateModel(
            name='Order',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('order_id', models.CharField(max_length=64, unique=True)),
                ('kind', models.CharField(choices=[('transport', 'Transport'), ('delivery', 'Delivery')], max_length=20)),
                ('service_tier', models.CharField(max_length=30)),
                ('pickup_latitude', models.DecimalField(decimal_places=6, max_digits=9)),
                ('pickup_longitude', models.DecimalField(decimal_places=6, max_digits=9)),
                ('destination_latitude', models.DecimalField(decimal_places=6, max_digits=9)),
                ('destination_longitude', models.DecimalField(decimal_places=6, max_digits=9)),
                ('status', models.CharField(choices=[('pending', 'Pending'), ('confirmed', 'Confirmed'), ('driver_assigned', 'Driver Assigned'), ('picked_up', 'Picked Up'), ('in_transit', 'In Transit'), ('delivered', 'Delivered'), ('cancelled', 'Cancelled')], db_index=True, default='pending', max_length=20)),
                ('assigned_driver_id', models.CharField(blank=True, max_length=64, null=True)),
                ('created_at', models.DateTimeField()),
                ('updated_at', models.DateTimeField(blank=True, null=True)),
                ('confirmed_at', models.DateTimeField(blank=True, null=True)),
                ('assigned_at', models.DateTimeField(blank=True, null=True)),
                ('picked_up_at', models.DateTimeField(blank=True, null=True)),
                ('in_transit_at', models.DateTimeField(blank=True, null=True)),
                ('delivered_at', models.DateTimeField(blank=True, null=True)),
                ('cancelled_at', models.DateTimeField(blank=True, null=True)),
                ('cancellation_code', models.CharField(blank=True, choices=[('customer_request', "Cancelled at the customer's request"), ('driver_unavailable', 'Driver became unavailable'), ('wrong_address', 'Wrong pickup or destination address'), ('payment_issue', 'Payment could not be completed'), ('vehicle_issue', 'Vehicle problem'), ('no_show', 'Customer did not show up'), ('duplicate_order', 'Duplicate order'), ('timeout', 'No driver found in time'), ('other', 'Other')], max_length=30, null=True)),
                ('cancellation_reason', models.TextField(blank=True, null=True)),
            ],
            options={
                'db_table': 'orders',
                'ordering': ['-created_at'],
            },
        ),
        migrations.CreateModel(
            name='OrderEvent',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('order_id', models.CharField(db_index=True, max_length=64)),
                ('from_status', models.CharField(max_length=20)),
                ('to_status', models.CharField(max_length=20)),
                ('actor', models.CharField(max_length=64)),
                ('at', models.DateTimeField()),
                ('metadata', models.JSONField(blank=True, default=dict)),
            ],
            options={
                'db_table': 'order_events',
                'ordering': ['at', 'id'],
            },
        ),
    ]
