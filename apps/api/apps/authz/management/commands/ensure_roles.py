"""
Management command to ensure the fixed roles (and optionally a superuser) exist.

Usage:
    python manage.py ensure_roles
    DJANGO_SUPERUSER_EMAIL=... DJANGO_SUPERUSER_PASSWORD=... python manage.py ensure_roles

Idempotent; safe to run on every container start.
"""
import os

from django.contrib.auth import get_user_model
from django.core.management.base import BaseCommand
from django.db import transaction

from apps.authz.models import Role, RoleChoices, UserRole


class Command(BaseCommand):
    help = 'Create the fixed roles and, when configured, an admin superuser'

    @transaction.atomic
    def handle(self, *args, **options):
        for role_choice in RoleChoices:
            role, created = Role.objects.get_or_create(name=role_choice)
            if created:
                self.stdout.write(self.style.SUCCESS(f'Created role: {role.name}'))
            else:
                self.stdout.write(f'Role exists: {role.name}')

        email = os.environ.get('DJANGO_SUPERUSER_EMAIL')
        password = os.environ.get('DJANGO_SUPERUSER_PASSWORD')
        if not email:
            return

        User = get_user_model()
        user = User.objects.filter(email=email).first()
        if user is None:
            if not password:
                self.stdout.write(self.style.WARNING(
                    'DJANGO_SUPERUSER_PASSWORD is not set; superuser not created'
                ))
                return
            user = User.objects.create_superuser(email=email, password=password)
            self.stdout.write(self.style.SUCCESS(f'Superuser "{email}" created'))
        else:
            self.stdout.write(self.style.WARNING(f'Superuser "{email}" already exists'))

        UserRole.objects.get_or_create(user=user, role=Role.objects.get(name=RoleChoices.ADMIN))
