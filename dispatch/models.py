from django.db import models

from .geo import to_coordinate
from .records import SERVICE_AMBULANCE, SERVICE_BED


class Hospital(models.Model):
    SERVICE_CHOICES = [
        ('premium', 'Premium'),
        ('standard', 'Standard'),
    ]
    name = models.CharField(max_length=200)
    address = models.CharField(max_length=255, blank=True, default='')
    latitude = models.FloatField(null=True, blank=True)
    longitude = models.FloatField(null=True, blank=True)
    rating = models.FloatField(default=0.0)
    verified = models.BooleanField(default=False)
    available_beds = models.PositiveIntegerField(default=0)
    ambulances = models.PositiveIntegerField(default=0)
    wait_time_minutes = models.PositiveIntegerField(null=True, blank=True)
    specialties = models.JSONField(default=list, blank=True)
    service_type = models.CharField(max_length=20, choices=SERVICE_CHOICES, default='standard')

    def __str__(self):
        return self.name

    def as_payload(self):
        return {
            'id': str(self.pk),
            'name': self.name,
            'address': self.address or None,
            'latitude': self.latitude,
            'longitude': self.longitude,
            'rating': self.rating,
            'verified': self.verified,
            'available_beds': self.available_beds,
            'ambulances': self.ambulances,
            'wait_time_minutes': self.wait_time_minutes,
            'specialties': list(self.specialties or []),
            'service_type': self.service_type,
        }


class Ambulance(models.Model):
    STATUS_CHOICES = [
        ('available', 'Available'),
        ('dispatched', 'Dispatched'),
        ('maintenance', 'Maintenance'),
    ]
    call_sign = models.CharField(max_length=50)
    vehicle_number = models.CharField(max_length=20, unique=True)
    ambulance_type = models.CharField(max_length=50, blank=True, default='')
    status = models.CharField(max_length=20, choices=STATUS_CHOICES, default='available')
    rating = models.FloatField(null=True, blank=True)
    crew = models.JSONField(default=list, blank=True)
    driver_name = models.CharField(max_length=100, blank=True, default='')
    driver_phone = models.CharField(max_length=20, blank=True, default='')
    latitude = models.FloatField(null=True, blank=True)
    longitude = models.FloatField(null=True, blank=True)
    hospital = models.ForeignKey(Hospital, on_delete=models.SET_NULL, null=True, blank=True)

    def __str__(self):
        return self.call_sign

    @property
    def location(self):
        return to_coordinate((self.latitude, self.longitude))


class EmergencyRequest(models.Model):
    SERVICE_CHOICES = [
        (SERVICE_AMBULANCE, 'Ambulance'),
        (SERVICE_BED, 'Bed'),
    ]
    STATUS_CHOICES = [
        ('requested', 'Requested'),
        ('dispatched', 'Dispatched'),
        ('accepted', 'Accepted'),
        ('en_route', 'En Route'),
        ('arrived', 'Arrived'),
        ('reserved', 'Reserved'),
        ('ready', 'Ready'),
        ('occupied', 'Occupied'),
        ('completed', 'Completed'),
        ('cancelled', 'Cancelled'),
    ]
    TERMINAL = ('completed', 'cancelled')

    request_id = models.CharField(max_length=64, unique=True)
    user_id = models.CharField(max_length=64, db_index=True)
    service_type = models.CharField(max_length=20, choices=SERVICE_CHOICES)
    status = models.CharField(max_length=20, choices=STATUS_CHOICES, default='requested')
    hospital = models.ForeignKey(Hospital, on_delete=models.SET_NULL, null=True, blank=True)
    hospital_name = models.CharField(max_length=200, blank=True, default='')
    ambulance = models.ForeignKey(Ambulance, on_delete=models.SET_NULL, null=True, blank=True)
    ambulance_type = models.CharField(max_length=50, blank=True, default='')
    eta_seconds = models.FloatField(null=True, blank=True)
    started_at = models.BigIntegerField(null=True, blank=True)  # epoch milliseconds
    # Serialized point (GeoJSON, WKT or hex EWKB) as pushed by the responder app.
    responder_location = models.TextField(blank=True, default='')
    responder_heading = models.FloatField(null=True, blank=True)
    bed_number = models.CharField(max_length=20, blank=True, default='')
    bed_type = models.CharField(max_length=50, blank=True, default='')
    specialty = models.CharField(max_length=100, blank=True, default='')
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ['-created_at']

    def __str__(self):
        return self.request_id

    def as_payload(self, fields=None):
        """
        Serialise the row into an update payload.

        With ``fields`` only those columns (plus the correlation keys) are
        included, giving a partial update.
        """
        ambulance = self.ambulance
        payload = {
            'status': self.status,
            'hospital_id': str(self.hospital_id) if self.hospital_id else None,
            'hospital_name': self.hospital_name or None,
            'ambulance_type': self.ambulance_type or None,
            'eta_seconds': self.eta_seconds,
            'started_at': self.started_at,
            'responder_id': str(self.ambulance_id) if self.ambulance_id else None,
            'responder_name': (ambulance.driver_name or None) if ambulance else None,
            'responder_phone': (ambulance.driver_phone or None) if ambulance else None,
            'vehicle_plate': ambulance.vehicle_number if ambulance else None,
            'responder_location': self.responder_location or None,
            'responder_heading': self.responder_heading,
            'bed_number': self.bed_number or None,
            'bed_type': self.bed_type or None,
            'specialty': self.specialty or None,
        }
        if fields is not None:
            wanted = set()
            for name in fields:
                wanted.add('hospital_id' if name == 'hospital' else name)
                if name in ('ambulance', 'ambulance_id'):
                    wanted.update(
                        ('responder_id', 'responder_name', 'responder_phone', 'vehicle_plate')
                    )
            payload = {key: value for key, value in payload.items() if key in wanted}

        payload.update(
            {
                'request_id': self.request_id,
                'user_id': self.user_id,
                'service_type': self.service_type,
                'created_at': self.created_at.isoformat() if self.created_at else None,
            }
        )
        return payload
