from app.auth import get_password_hash
from app.database import SessionLocal, engine, Base
from app.models import Campaign, CampaignRecipient, User
from app.services import wallet

# Create tables
Base.metadata.create_all(bind=engine)

db = SessionLocal()

DEMO_EMAIL = "demo@example.com"

user = db.query(User).filter(User.email == DEMO_EMAIL).first()
if user is None:
    user = User(
        email=DEMO_EMAIL,
        hashed_password=get_password_hash("demopassword123"),
        display_name="Demo",
    )
    db.add(user)
    db.commit()
    db.refresh(user)

# Starting credits; the fixed correlation id makes reseeding a no-op
balance = wallet.credit(db, user.id, 100, "seed-demo-credits", note="seed")

campaign = db.query(Campaign).filter(Campaign.user_id == user.id, Campaign.name == "Welcome").first()
if campaign is None:
    campaign = Campaign(
        user_id=user.id,
        name="Welcome",
        subject="Welcome aboard",
        html=(
            "<html><body>"
            "<p>Thanks for signing up.</p>"
            '<p><a href="https://example.com/getting-started">Get started</a></p>'
            "</body></html>"
        ),
        from_email="hello@example.com",
        from_name="Demo Team",
    )
    db.add(campaign)
    db.commit()
    db.refresh(campaign)

    for email in ("alice@example.com", "bob@example.com", "carol@example.com"):
        db.add(CampaignRecipient(campaign_id=campaign.id, email=email))
    campaign.recipients_count = 3
    db.commit()

db.close()

print(f"Seeded user {DEMO_EMAIL} with {balance} credits and campaign {campaign.id}")
