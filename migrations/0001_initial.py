# Generated migration for the ledger, incident and mirror tables

import django.db.models.deletion
from django.db import migrations, models

TIER_CHOICES = [
    ("BRONZE", "Bronze"),
    ("SILVER", "Silver"),
    ("GOLD", "Gold"),
    ("PLATINUM", "Platinum"),
    ("DIAMOND", "Diamond"),
]


class Migration(migrations.Migration):

    initial = True

    dependencies = []

    operations = [
        migrations.CreateModel(
            name="PrincipalBalance",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                (
                    "principal_id",
                    models.CharField(
                        help_text="Opaque customer identifier (e.g. identity provider UID)",
                        max_length=128,
                        unique=True,
                        verbose_name="principal",
                    ),
                ),
                ("points_balance", models.PositiveIntegerField(default=0, verbose_name="points balance")),
                (
                    "tier",
                    models.CharField(choices=TIER_CHOICES, default="BRONZE", max_length=20, verbose_name="tier"),
                ),
                ("created_at", models.DateTimeField(auto_now_add=True, verbose_name="created at")),
                ("updated_at", models.DateTimeField(auto_now=True, verbose_name="updated at")),
            ],
            options={
                "verbose_name": "principal balance",
                "verbose_name_plural": "principal balances",
                "db_table": "tallyman_principal_balance",
                "constraints": [
                    models.CheckConstraint(
                        condition=models.Q(points_balance__gte=0),
                        name="tallyman_balance_non_negative",
                    ),
                ],
            },
        ),
        migrations.CreateModel(
            name="ActivityLogEntry",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                (
                    "delta",
                    models.IntegerField(
                        help_text="Effective change applied after flooring the balance at zero",
                        verbose_name="delta",
                    ),
                ),
                (
                    "requested_delta",
                    models.IntegerField(help_text="Change requested by the caller", verbose_name="requested delta"),
                ),
                ("reason", models.CharField(db_index=True, max_length=64, verbose_name="reason")),
                ("resulting_balance", models.PositiveIntegerField(verbose_name="resulting balance")),
                (
                    "resulting_tier",
                    models.CharField(choices=TIER_CHOICES, max_length=20, verbose_name="resulting tier"),
                ),
                ("metadata", models.JSONField(blank=True, default=dict, verbose_name="metadata")),
                ("created_at", models.DateTimeField(auto_now_add=True, db_index=True, verbose_name="created at")),
                (
                    "account",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="activity",
                        to="tallyman.principalbalance",
                        verbose_name="account",
                    ),
                ),
                (
                    "reverses",
                    models.OneToOneField(
                        blank=True,
                        null=True,
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="reversed_by",
                        to="tallyman.activitylogentry",
                        verbose_name="reverses",
                    ),
                ),
            ],
            options={
                "verbose_name": "activity log entry",
                "verbose_name_plural": "activity log",
                "db_table": "tallyman_activity_log",
                "ordering": ["-created_at", "-id"],
                "indexes": [
                    models.Index(fields=["account", "-created_at"], name="tallyman_act_account_idx"),
                ],
            },
        ),
        migrations.CreateModel(
            name="LedgerIncident",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("principal_id", models.CharField(db_index=True, max_length=128, verbose_name="principal")),
                ("original_delta", models.IntegerField(verbose_name="original delta")),
                ("requested_delta", models.IntegerField(verbose_name="requested delta")),
                ("original_reason", models.CharField(max_length=64, verbose_name="original reason")),
                ("mirror_error", models.TextField(verbose_name="mirror error")),
                ("compensation_error", models.TextField(verbose_name="compensation error")),
                ("context", models.JSONField(blank=True, default=dict, verbose_name="context")),
                (
                    "status",
                    models.CharField(
                        choices=[("open", "Open"), ("resolved", "Resolved")],
                        db_index=True,
                        default="open",
                        max_length=20,
                        verbose_name="status",
                    ),
                ),
                ("created_at", models.DateTimeField(auto_now_add=True, verbose_name="created at")),
                ("resolved_at", models.DateTimeField(blank=True, null=True, verbose_name="resolved at")),
                ("resolved_by", models.CharField(blank=True, max_length=100, verbose_name="resolved by")),
                ("resolution_note", models.TextField(blank=True, verbose_name="resolution note")),
                (
                    "original_entry",
                    models.ForeignKey(
                        blank=True,
                        null=True,
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="incidents",
                        to="tallyman.activitylogentry",
                        verbose_name="original entry",
                    ),
                ),
            ],
            options={
                "verbose_name": "ledger incident",
                "verbose_name_plural": "ledger incidents",
                "db_table": "tallyman_incident",
                "ordering": ["-created_at"],
            },
        ),
        migrations.CreateModel(
            name="MirrorDocument",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("document_id", models.CharField(max_length=128, unique=True, verbose_name="document id")),
                ("data", models.JSONField(default=dict, verbose_name="data")),
                ("updated_at", models.DateTimeField(auto_now=True, verbose_name="updated at")),
            ],
            options={
                "verbose_name": "mirror document",
                "verbose_name_plural": "mirror documents",
                "db_table": "tallyman_mirror_document",
            },
        ),
    ]
