# medreminder/android_src.py
#
# Java receivers + manifest fragment for Buildozer:
#   android.add_src = android_src
#   android.extra_manifest_xml = android_src/extra_manifest.xml
from pathlib import Path

from .config import JAVA_PACKAGE, NOTIFICATION_CHANNEL_ID, NOTIFICATION_CHANNEL_NAME, NOTIFICATION_TITLE

JAVA_ALARM_RECEIVER_SRC = r"""
package {JAVA_PACKAGE};

import android.app.Notification;
import android.app.NotificationChannel;
import android.app.NotificationManager;
import android.content.BroadcastReceiver;
import android.content.Context;
import android.content.Intent;
import android.os.Build;

public class AlarmReceiver extends BroadcastReceiver {{
    private static final String CHANNEL_ID = "{CHANNEL_ID}";

    @Override
    public void onReceive(Context context, Intent intent) {{
        String title = intent.getStringExtra("title");
        String body = intent.getStringExtra("body");
        String handle = intent.getStringExtra("handle");
        if (title == null) title = "{TITLE}";
        if (body == null) body = "Take your medicine";

        NotificationManager nm =
                (NotificationManager) context.getSystemService(Context.NOTIFICATION_SERVICE);

        if (Build.VERSION.SDK_INT >= 26) {{
            NotificationChannel ch = new NotificationChannel(
                    CHANNEL_ID,
                    "{CHANNEL_NAME}",
                    NotificationManager.IMPORTANCE_HIGH
            );
            ch.setDescription("Scheduled medicine reminders");
            nm.createNotificationChannel(ch);
        }}

        Notification.Builder b = (Build.VERSION.SDK_INT >= 26)
                ? new Notification.Builder(context, CHANNEL_ID)
                : new Notification.Builder(context);

        b.setContentTitle(title)
         .setContentText(body)
         .setSmallIcon(context.getApplicationInfo().icon)
         .setAutoCancel(true);

        // one notification slot per booking; a repeat replaces the previous one
        int nid = (handle != null) ? (handle.hashCode() & 0x7fffffff)
                                   : (int)(System.currentTimeMillis() & 0x7fffffff);
        nm.notify(nid, b.build());
    }}
}}
"""

JAVA_BOOT_RECEIVER_SRC = r"""
package {JAVA_PACKAGE};

import android.content.BroadcastReceiver;
import android.content.Context;
import android.content.Intent;

public class BootReceiver extends BroadcastReceiver {{
    @Override
    public void onReceive(Context context, Intent intent) {{
        // AlarmManager drops everything on reboot; launch the app so it reconciles from the DB.
        Intent launch = context.getPackageManager().getLaunchIntentForPackage(context.getPackageName());
        if (launch != null) {{
            launch.addFlags(Intent.FLAG_ACTIVITY_NEW_TASK);
            context.startActivity(launch);
        }}
    }}
}}
"""

EXTRA_MANIFEST_XML = r"""<manifest xmlns:android="http://schemas.android.com/apk/res/android">
    <uses-permission android:name="android.permission.RECEIVE_BOOT_COMPLETED"/>
    <uses-permission android:name="android.permission.SCHEDULE_EXACT_ALARM"/>
    <uses-permission android:name="android.permission.POST_NOTIFICATIONS"/>
    <uses-permission android:name="android.permission.WAKE_LOCK"/>
    <uses-permission android:name="android.permission.VIBRATE"/>

    <application>
        <receiver
            android:name="{JAVA_PACKAGE}.AlarmReceiver"
            android:exported="false" />

        <receiver
            android:name="{JAVA_PACKAGE}.BootReceiver"
            android:exported="false">
            <intent-filter>
                <action android:name="android.intent.action.BOOT_COMPLETED"/>
                <action android:name="android.intent.action.LOCKED_BOOT_COMPLETED"/>
            </intent-filter>
        </receiver>
    </application>
</manifest>
"""


def write_android_sources(out_dir: Path) -> Path:
    pkg_path = Path(*JAVA_PACKAGE.split("."))
    src_root = Path(out_dir) / "android_src"
    java_dir = src_root / pkg_path
    java_dir.mkdir(parents=True, exist_ok=True)

    (java_dir / "AlarmReceiver.java").write_text(
        JAVA_ALARM_RECEIVER_SRC.format(
            JAVA_PACKAGE=JAVA_PACKAGE,
            CHANNEL_ID=NOTIFICATION_CHANNEL_ID,
            CHANNEL_NAME=NOTIFICATION_CHANNEL_NAME,
            TITLE=NOTIFICATION_TITLE,
        ),
        encoding="utf-8",
    )
    (java_dir / "BootReceiver.java").write_text(
        JAVA_BOOT_RECEIVER_SRC.format(JAVA_PACKAGE=JAVA_PACKAGE),
        encoding="utf-8",
    )
    (src_root / "extra_manifest.xml").write_text(
        EXTRA_MANIFEST_XML.format(JAVA_PACKAGE=JAVA_PACKAGE),
        encoding="utf-8",
    )
    return src_root
