import django.utils.timezone
from django.db import migrations, models


class Migration(migrations.Migration):

    initial = True

    dependencies = []

    operations = [
        migrations.CreateModel(
            name='DriverProfile',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('driver_id', models.CharField(max_length=64, unique=True)),
                ('display_name', models.CharField(blank=True, max_length=100)),
                ('vehicle_number', models.CharField(blank=True, max_length=20)),
                ('vehicle_class', models.CharField(choices=[('moto', 'Moto'), ('eco', 'Eco'), ('standard', 'Standard'), ('premium', 'Premium'), ('truck', 'Truck')], default='standard', max_length=20)),
                ('rating', models.FloatField(default=0.0)),
                ('is_available', models.BooleanField(default=False)),
                ('reserved_order_id', models.CharField(blank=True, max_length=64, null=True)),
                ('current_latitude', models.DecimalField(blank=True, decimal_places=6, max_digits=10, null=True)),
                ('current_longitude', models.DecimalField(blank=True, decimal_places=6, max_digits=10, null=True)),
                ('heading_degrees', models.FloatField(default=0.0)),
                ('last_location_update', models.DateTimeField(default=django.utils.timezone.now)),
            ],
            options={
                'db_table': 'driver_profiles',
            },
        ),
    ]
